import logging
from contextlib import contextmanager
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import TYPE_CHECKING, Iterator

from conveyor.config import config
from conveyor.context import RunContext
from conveyor.exceptions import (
    Cancelled,
    CommandError,
    CredentialError,
    GateRejected,
    GateTimeout,
    NotificationError,
    StepFailure,
)
from conveyor.schemas.pipeline import (
    CheckoutStep,
    CredentialBinding,
    CredentialsStep,
    GateStep,
    NotifyStep,
    PublishStep,
    ShellStep,
    Step,
)

if TYPE_CHECKING:
    from conveyor.runner.runner import Runner

logger = logging.getLogger(__name__)


class StepExecutor:
    """Runs the steps of one stage (or one hook list) against the run context.

    Every failure surfaces as :class:`StepFailure`; a set cancel token surfaces
    as :class:`Cancelled` at the next step boundary. Hook executors ignore
    cancellation so ``always`` hooks still run after an abort.
    """

    runner: 'Runner'
    context: RunContext
    stage_name: str
    in_hook: bool

    def __init__(
        self, runner: 'Runner', context: RunContext, stage_name: str, in_hook=False
    ):
        self.runner = runner
        self.context = context
        self.stage_name = stage_name
        self.in_hook = in_hook
        self._gates = 0

    @property
    def cancel(self):
        return None if self.in_hook else self.runner.cancel

    def check_cancelled(self):
        if self.cancel is not None and self.cancel.cancelled:
            raise Cancelled(self.cancel.reason or 'Run cancelled')

    def interpolate(self, template: str) -> str:
        try:
            return self.context.interpolate(template)
        except KeyError as e:
            raise StepFailure(f'Variable {e.args[0]!r} is not set')
        except ValueError as e:
            raise StepFailure(f'Bad template {template!r}: {e}')

    async def run_steps(self, steps: list[Step]):
        for step in steps:
            self.check_cancelled()
            await self.run(step)

    async def run(self, step: Step):
        handler = getattr(self, f'_run_{step.kind}')
        try:
            await handler(step)
        except StepFailure as e:
            if e.step_kind is None:
                e.step_kind = step.kind
            raise
        except Cancelled:
            raise
        except Exception as e:
            logger.exception(f'[{self.stage_name}] Unexpected error in {step.kind} step')
            failure = StepFailure(self.context.redact(f'{type(e).__name__}: {e}'))
            failure.step_kind = step.kind
            raise failure from e

    async def _run_sh(self, step: ShellStep):
        cwd = self.runner.workdir
        if step.cwd:
            cwd = (cwd / step.cwd).resolve()
            if not cwd.is_relative_to(self.runner.workdir.resolve()):
                raise StepFailure(f'cwd {step.cwd!r} is outside the workspace')
        logger.info(f'[{self.stage_name}] $ {self.context.redact(step.script.strip())}')
        result = await self.runner.collaborators.commands.run_command(
            step.script,
            cwd,
            env=self.context.as_env(),
            timeout=step.timeout,
            cancel=self.cancel,
        )
        stdout = self.context.redact(result.stdout)
        stderr = self.context.redact(result.stderr)
        if result.cancelled:
            raise Cancelled('Run cancelled while a command was running')
        if result.timed_out:
            raise StepFailure(
                f'Script timed out after {step.timeout}s',
                exit_code=result.exit_code,
                stdout=stdout,
                stderr=stderr,
            )
        if result.exit_code:
            logger.error(f'[{self.stage_name}] Script exited with code {result.exit_code}')
            raise StepFailure(
                f'Script exited with code {result.exit_code}',
                exit_code=result.exit_code,
                stdout=stdout,
                stderr=stderr,
            )
        if step.output_var:
            self.context.set(step.output_var, result.stdout.strip())

    async def _run_checkout(self, step: CheckoutStep):
        ref = self.interpolate(step.ref)
        try:
            revision = await self.runner.collaborators.source_control.fetch(ref)
        except CommandError as e:
            raise StepFailure(f'Checkout of {ref!r} failed: {e}')
        logger.info(f'[{self.stage_name}] Checked out {ref} at {revision}')
        self.context.set(step.revision_var, revision)
        if step.tag_var:
            self.context.set(step.tag_var, self.interpolate(step.tag_template))

    async def _run_publish(self, step: PublishStep):
        path = self.interpolate(step.path)
        try:
            await self.runner.collaborators.reports.publish(
                path, step.report_kind, allow_empty=step.allow_empty
            )
        except NotificationError as e:
            raise StepFailure(str(e))

    async def _run_notify(self, step: NotifyStep):
        # Never fails a stage; inside hooks the error is recorded in hook_errors
        try:
            channel = self.interpolate(step.channel)
            message = self.interpolate(step.message)
            subject = self.interpolate(step.subject) if step.subject else None
            await self.runner.collaborators.notifier.notify(
                channel, self.context.redact(message), step.severity, subject
            )
        except (StepFailure, NotificationError) as e:
            if self.in_hook:
                raise StepFailure(f'Notification not sent: {e}')
            reason = self.context.redact(str(e))
            logger.warning(f'[{self.stage_name}] Notification not sent: {reason}')

    async def _run_gate(self, step: GateStep):
        message = self.interpolate(step.message)
        timeout = step.timeout or config.gate_timeout
        self._gates += 1
        gate_id = f'{self.runner.run_id}/{self.stage_name}/{self._gates}'
        logger.info(f'[{self.stage_name}] Waiting for approval: {message} ({step.ok}?)')
        decision = await self.runner.collaborators.approvals.wait(
            gate_id, message, timeout, self.cancel
        )
        if decision is None:
            self.check_cancelled()
            raise GateTimeout(f'No approval within {timeout}s')
        if not decision.approved:
            reason = f': {decision.comment}' if decision.comment else ''
            raise GateRejected(f'Rejected by {decision.by or "anonymous"}{reason}')
        logger.info(f'[{self.stage_name}] Approved by {decision.by or "anonymous"}')

    async def _run_with_credentials(self, step: CredentialsStep):
        with self.credential_scope(step.bindings):
            await self.run_steps(step.steps)

    @contextmanager
    def credential_scope(self, bindings: list[CredentialBinding]) -> Iterator[None]:
        if not bindings:
            yield
            return
        provider = self.runner.collaborators.credentials
        values = {}
        paths = {}
        with TemporaryDirectory(prefix='conveyor-credentials-') as tempdir:
            for binding in bindings:
                try:
                    credential = provider.resolve(binding.credentials_id)
                except CredentialError:
                    raise
                except Exception as e:
                    raise CredentialError(
                        f'Cannot resolve credentials {binding.credentials_id!r}: {e}'
                    ) from e
                if binding.username_variable:
                    if credential.username is None or credential.password is None:
                        raise CredentialError(
                            f'Credentials {binding.credentials_id!r}'
                            ' have no username/password'
                        )
                    values[binding.username_variable] = credential.username
                    values[binding.password_variable] = (
                        credential.password.get_secret_value()
                    )
                elif credential.file is not None:
                    content = credential.file.get_secret_value()
                    path = Path(tempdir) / binding.credentials_id
                    path.write_text(content)
                    path.chmod(0o600)
                    paths[binding.variable] = str(path)
                    self.context.add_secret(content)
                elif credential.secret is not None:
                    values[binding.variable] = credential.secret.get_secret_value()
                else:
                    raise CredentialError(
                        f'Credentials {binding.credentials_id!r} have no value'
                    )
            with self.context.scoped(values), self.context.scoped(paths, secret=False):
                yield
