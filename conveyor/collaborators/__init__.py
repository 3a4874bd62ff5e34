from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from conveyor.context import CancelToken
from conveyor.schemas import (
    ApprovalDecision,
    CommandResult,
    ReportSummary,
)
from conveyor.schemas.pipeline import ReportKind, Severity
from conveyor.collaborators.credentials import Credential


class SourceControl(Protocol):
    async def fetch(self, ref: str) -> str:
        """Check ``ref`` out into the workspace and return its short revision."""


class CommandRunner(Protocol):
    async def run_command(
        self,
        command: str,
        cwd: Path,
        *,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> CommandResult: ...


class ReportPublisher(Protocol):
    async def publish(
        self, report_path: str, report_kind: ReportKind, *, allow_empty: bool = False
    ) -> ReportSummary: ...


class CredentialProvider(Protocol):
    def resolve(self, credentials_id: str) -> Credential: ...


class Notifier(Protocol):
    async def notify(
        self, channel: str, message: str, severity: Severity, subject: str | None = None
    ): ...


class ApprovalSource(Protocol):
    async def wait(
        self,
        gate_id: str,
        message: str,
        timeout: float,
        cancel: CancelToken | None = None,
    ) -> ApprovalDecision | None:
        """Block until the gate is decided; None when ``timeout`` elapses first."""


@dataclass
class Collaborators:
    source_control: SourceControl
    commands: CommandRunner
    reports: ReportPublisher
    credentials: CredentialProvider
    notifier: Notifier
    approvals: ApprovalSource

    @classmethod
    def from_config(
        cls,
        workdir: Path,
        artifacts_dir: Path,
        approvals: ApprovalSource,
        clone_url: str | None = None,
        repo_name: str | None = None,
    ) -> 'Collaborators':
        from conveyor.collaborators.commands import LocalCommandRunner
        from conveyor.collaborators.credentials import FileCredentialProvider
        from conveyor.collaborators.notify import NotificationRouter
        from conveyor.collaborators.reports import FileReportPublisher
        from conveyor.collaborators.scm import GitSourceControl
        from conveyor.config import config

        return cls(
            source_control=GitSourceControl(workdir, clone_url, repo_name),
            commands=LocalCommandRunner(),
            reports=FileReportPublisher(workdir, artifacts_dir),
            credentials=FileCredentialProvider(config.credentials_file),
            notifier=NotificationRouter.from_config(),
            approvals=approvals,
        )
