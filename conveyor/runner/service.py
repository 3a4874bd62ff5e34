import logging
from pathlib import Path

from conveyor.collaborators import ApprovalSource, Collaborators
from conveyor.collaborators.approval import ApprovalBroker
from conveyor.config import ConcurrencyPolicy, config
from conveyor.context import RunContext
from conveyor.runner.registry import RunRegistry
from conveyor.runner.runner import Runner
from conveyor.runner.validation import validate_pipeline
from conveyor.schemas import RunResult, TriggerInfo
from conveyor.schemas.pipeline import PipelineDef
from conveyor.store import RunStore

logger = logging.getLogger(__name__)


async def run_pipeline(
    definition: PipelineDef,
    trigger: TriggerInfo,
    *,
    registry: RunRegistry,
    store: RunStore,
    approvals: ApprovalSource | None = None,
    collaborators: Collaborators | None = None,
    workdir: Path | None = None,
    policy: ConcurrencyPolicy | None = None,
) -> RunResult:
    """Runs ``definition`` for one trigger event and records the result.

    Raises ConfigurationError before anything runs when the definition is
    invalid, and RunAlreadyActive when the pipeline is busy under the
    ``reject`` policy.
    """
    context = RunContext.from_trigger(
        trigger,
        definition.environment,
        pipeline=definition.name,
        main_branch=definition.options.main_branch,
    )
    validate_pipeline(definition, context)

    run_id = context['RUN_ID']
    if workdir is None:
        workdir = store.workspace(definition.name, trigger.build_number)
    if collaborators is None:
        collaborators = Collaborators.from_config(
            workdir,
            store.artifacts(definition.name, trigger.build_number),
            approvals or ApprovalBroker(),
            clone_url=trigger.clone_url,
            repo_name=trigger.repo_name,
        )

    async with registry.claim(
        definition.name,
        run_id,
        policy or config.concurrency_policy,
        exclusive=definition.options.disable_concurrent_builds,
    ) as cancel:
        logger.info(
            f'Starting {run_id} ({trigger.event.value}, branch {trigger.branch})'
        )
        runner = Runner(collaborators, workdir, run_id=run_id, cancel=cancel)
        result = await runner.execute(definition, context)

    store.save(result, keep=definition.options.keep_runs)
    return result
