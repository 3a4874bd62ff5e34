"""Shared fixtures: an isolated data dir and deterministic collaborator stubs."""

import os
import tempfile

# Must happen before conveyor.config is imported
os.environ.setdefault('CONVEYOR_DATA_DIR', tempfile.mkdtemp(prefix='conveyor-tests-'))

from pathlib import Path

import pytest

from conveyor.collaborators import Collaborators
from conveyor.collaborators.approval import StaticApprovalSource
from conveyor.collaborators.credentials import Credential, StaticCredentialProvider
from conveyor.context import CancelToken, RunContext
from conveyor.exceptions import NotificationError, PublishError
from conveyor.runner import Runner
from conveyor.schemas import ApprovalDecision, CommandResult, ReportSummary
from conveyor.schemas.pipeline import PipelineDef


class StubSourceControl:
    def __init__(self, revision='abc1234'):
        self.revision = revision
        self.fetched = []

    async def fetch(self, ref):
        self.fetched.append(ref)
        return self.revision


class StubCommandRunner:
    """Succeeds for every command unless a substring of it is in ``results``."""

    def __init__(self, results=None, on_run=None):
        self.results = results or {}
        self.on_run = on_run
        self.calls = []

    async def run_command(self, command, cwd, *, env=None, timeout=None, cancel=None):
        self.calls.append({'command': command, 'cwd': cwd, 'env': dict(env or {})})
        if self.on_run is not None:
            self.on_run(command)
        for fragment, result in self.results.items():
            if fragment in command:
                return result
        return CommandResult(exit_code=0, stdout='ok\n', stderr='')

    @property
    def commands(self):
        return [c['command'] for c in self.calls]


class StubReports:
    def __init__(self, fail=False):
        self.fail = fail
        self.published = []

    async def publish(self, report_path, report_kind, *, allow_empty=False):
        self.published.append((report_path, report_kind))
        if self.fail:
            raise PublishError(f'No files match {report_path!r}')
        return ReportSummary(kind=report_kind.value, files=[report_path])


class StubNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def notify(self, channel, message, severity, subject=None):
        self.sent.append((channel, message, severity))
        if self.fail:
            raise NotificationError('Slack is down')


class StubApprovals(StaticApprovalSource):
    def __init__(self, decision=None):
        super().__init__(decision)
        self.gates = []

    async def wait(self, gate_id, message, timeout, cancel=None):
        self.gates.append((gate_id, message, timeout))
        return await super().wait(gate_id, message, timeout, cancel)


@pytest.fixture
def collaborators(tmp_path):
    return Collaborators(
        source_control=StubSourceControl(),
        commands=StubCommandRunner(),
        reports=StubReports(),
        credentials=StaticCredentialProvider(
            {
                'docker': Credential(username='bot', password='hunter2'),
                'token': Credential(secret='s3cr3t-token'),
                'kubeconfig': Credential(file='apiVersion: v1\n'),
            }
        ),
        notifier=StubNotifier(),
        approvals=StubApprovals(ApprovalDecision(approved=True, by='alice')),
    )


@pytest.fixture
def runner(collaborators, tmp_path):
    return Runner(collaborators, tmp_path, run_id='test-1', cancel=CancelToken())


@pytest.fixture
def main_context():
    return RunContext(
        {'BRANCH_NAME': 'main', 'CHANGE_ID': '', 'BUILD_NUMBER': '7', 'BUILD_URL': ''}
    )


@pytest.fixture
def pr_context():
    return RunContext(
        {
            'BRANCH_NAME': 'feature-x',
            'CHANGE_ID': '42',
            'BUILD_NUMBER': '8',
            'BUILD_URL': '',
        }
    )


def pipeline(**data) -> PipelineDef:
    return PipelineDef.model_validate(data)


def sh(script, **kwargs):
    return {'kind': 'sh', 'script': script, **kwargs}


def notify(message, channel='#ci', **kwargs):
    return {'kind': 'notify', 'channel': channel, 'message': message, **kwargs}


SAMPLES_DIR = Path(__file__).absolute().parent.parent / 'samples'
