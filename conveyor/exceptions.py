from conveyor.schemas import FailureKind


class ConveyorError(Exception):
    pass


class ConfigurationError(ConveyorError):
    """The pipeline definition is structurally invalid; the run never starts."""


class CommandError(ConveyorError):
    pass


class RunAlreadyActive(ConveyorError):
    pass


class Cancelled(ConveyorError):
    """Raised at a step boundary once the run's cancel token is set."""


class StepFailure(ConveyorError):
    kind = FailureKind.step_failure

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        stdout: str = '',
        stderr: str = '',
    ):
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.step_kind: str | None = None


class CredentialError(StepFailure):
    pass


class GateTimeout(StepFailure):
    kind = FailureKind.gate_timeout


class GateRejected(StepFailure):
    kind = FailureKind.gate_rejected


class NotificationError(ConveyorError):
    pass


class PublishError(NotificationError):
    pass
