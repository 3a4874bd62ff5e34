from datetime import datetime
from enum import Enum
from pydantic import BaseModel, ConfigDict


class TriggerEvent(str, Enum):
    main_line_update = 'main_line_update'
    change_proposal = 'change_proposal'


class TriggerInfo(BaseModel):
    event: TriggerEvent
    branch: str
    change_id: str | None = None
    build_number: int
    build_url: str | None = None
    clone_url: str | None = None
    repo_name: str | None = None


class RunStatus(str, Enum):
    success = 'success'
    failure = 'failure'
    aborted = 'aborted'


class StageOutcome(str, Enum):
    skipped = 'skipped'
    succeeded = 'succeeded'
    failed = 'failed'
    aborted = 'aborted'


class FailureKind(str, Enum):
    step_failure = 'step_failure'
    gate_timeout = 'gate_timeout'
    gate_rejected = 'gate_rejected'


class CommandResult(BaseModel):
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False
    cancelled: bool = False


class ReportSummary(BaseModel):
    kind: str
    files: list[str]
    counts: dict[str, int] = {}


class ApprovalDecision(BaseModel):
    approved: bool
    by: str | None = None
    comment: str | None = None


class StepFailureReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage: str
    step_index: int
    step_kind: str | None
    kind: FailureKind
    message: str
    exit_code: int | None = None
    stdout: str = ''
    stderr: str = ''


class StageResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    outcome: StageOutcome
    failure: StepFailureReport | None = None
    hook_errors: tuple[str, ...] = ()
    started_at: datetime | None = None
    finished_at: datetime | None = None


class RunResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    run_id: str
    pipeline: str
    build_number: int
    status: RunStatus
    stages: tuple[StageResult, ...]
    failure: StepFailureReport | None = None
    hook_errors: tuple[str, ...] = ()
    context: dict[str, str]
    started_at: datetime
    finished_at: datetime

    def outcome_of(self, stage_name: str) -> StageOutcome | None:
        for stage in self.stages:
            if stage.name == stage_name:
                return stage.outcome
        return None

    @property
    def outcomes(self) -> dict[str, StageOutcome]:
        return {stage.name: stage.outcome for stage in self.stages}
