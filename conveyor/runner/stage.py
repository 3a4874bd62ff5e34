import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from conveyor.context import RunContext
from conveyor.exceptions import Cancelled, StepFailure
from conveyor.runner.steps import StepExecutor
from conveyor.schemas import StageOutcome, StageResult, StepFailureReport
from conveyor.schemas.pipeline import PostHookSet, StageDef

if TYPE_CHECKING:
    from conveyor.runner.runner import Runner

logger = logging.getLogger(__name__)


async def run_post_hooks(
    runner: 'Runner',
    context: RunContext,
    scope: str,
    hooks: PostHookSet,
    outcome: StageOutcome,
) -> list[str]:
    """Runs ``always``, then ``success`` or ``failure`` depending on ``outcome``.

    Skipped and aborted outcomes only get ``always``. Hook failures are
    returned as messages and never change the outcome.
    """
    groups = [('always', hooks.always)]
    if outcome == StageOutcome.succeeded:
        groups.append(('success', hooks.success))
    elif outcome == StageOutcome.failed:
        groups.append(('failure', hooks.failure))

    errors = []
    executor = StepExecutor(runner, context, scope, in_hook=True)
    for name, steps in groups:
        for step in steps:
            try:
                await executor.run(step)
            except StepFailure as e:
                message = context.redact(f'{scope} post.{name} ({step.kind}): {e}')
                logger.warning(message)
                errors.append(message)
    return errors


class StageRunner:
    runner: 'Runner'
    stage: StageDef
    context: RunContext

    def __init__(self, runner: 'Runner', stage: StageDef, context: RunContext):
        self.runner = runner
        self.stage = stage
        self.context = context

    def failure_report(self, step_index: int, e: StepFailure) -> StepFailureReport:
        return StepFailureReport(
            stage=self.stage.name,
            step_index=step_index,
            step_kind=e.step_kind,
            kind=e.kind,
            message=self.context.redact(e.message),
            exit_code=e.exit_code,
            stdout=self.context.redact(e.stdout),
            stderr=self.context.redact(e.stderr),
        )

    async def run_steps(self) -> tuple[StageOutcome, StepFailureReport | None]:
        executor = StepExecutor(self.runner, self.context, self.stage.name)
        step_index = 0
        try:
            with executor.credential_scope(self.stage.credentials):
                for step_index, step in enumerate(self.stage.steps):
                    executor.check_cancelled()
                    await executor.run(step)
        except Cancelled as e:
            logger.warning(f'[{self.stage.name}] Aborted: {e}')
            return StageOutcome.aborted, None
        except StepFailure as e:
            report = self.failure_report(step_index, e)
            logger.error(f'[{self.stage.name}] Failed: {report.message}')
            return StageOutcome.failed, report
        return StageOutcome.succeeded, None

    async def run(self) -> StageResult:
        started_at = datetime.now(timezone.utc)
        failure = None
        if self.stage.when is not None and not self.stage.when.evaluate(self.context):
            logger.info(f'[{self.stage.name}] Skipped, condition not met')
            outcome = StageOutcome.skipped
        else:
            logger.info(f'[{self.stage.name}] Started')
            outcome, failure = await self.run_steps()

        hook_errors = await run_post_hooks(
            self.runner, self.context, self.stage.name, self.stage.post, outcome
        )
        logger.info(f'[{self.stage.name}] {outcome.value.capitalize()}')
        return StageResult(
            name=self.stage.name,
            outcome=outcome,
            failure=failure,
            hook_errors=hook_errors,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )
