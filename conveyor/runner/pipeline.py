import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from conveyor.const import RUN_STATUS_VARIABLE
from conveyor.context import RunContext
from conveyor.runner.stage import StageRunner, run_post_hooks
from conveyor.schemas import RunResult, RunStatus, StageOutcome
from conveyor.schemas.pipeline import PipelineDef

if TYPE_CHECKING:
    from conveyor.runner.runner import Runner

logger = logging.getLogger(__name__)

HOOK_OUTCOMES = {
    RunStatus.success: StageOutcome.succeeded,
    RunStatus.failure: StageOutcome.failed,
    RunStatus.aborted: StageOutcome.aborted,
}


class PipelineRunner:
    runner: 'Runner'
    definition: PipelineDef
    context: RunContext

    def __init__(self, runner: 'Runner', definition: PipelineDef, context: RunContext):
        self.runner = runner
        self.definition = definition
        self.context = context

    async def run(self) -> RunResult:
        started_at = datetime.now(timezone.utc)
        status = RunStatus.success
        results = []
        for stage in self.definition.stages:
            if self.runner.cancel.cancelled:
                logger.warning(f'Run {self.runner.run_id} cancelled before {stage.name!r}')
                status = RunStatus.aborted
                break
            result = await StageRunner(self.runner, stage, self.context).run()
            results.append(result)
            if result.outcome == StageOutcome.failed:
                status = RunStatus.failure
                break
            if result.outcome == StageOutcome.aborted:
                status = RunStatus.aborted
                break

        self.context.set(RUN_STATUS_VARIABLE, status.value)
        hook_errors = await run_post_hooks(
            self.runner,
            self.context,
            'Pipeline',
            self.definition.post,
            HOOK_OUTCOMES[status],
        )
        failure = next((r.failure for r in results if r.failure is not None), None)
        logger.info(f'Run {self.runner.run_id} finished: {status.value}')
        return RunResult(
            run_id=self.runner.run_id,
            pipeline=self.definition.name,
            build_number=int(self.context.get('BUILD_NUMBER') or 0),
            status=status,
            stages=results,
            failure=failure,
            hook_errors=hook_errors,
            context=self.context.snapshot(),
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )
