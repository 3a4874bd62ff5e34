"""Tests for approval gates and the in-process approval broker."""

import asyncio

import pytest

from conftest import pipeline, sh
from conveyor.collaborators.approval import ApprovalBroker
from conveyor.context import CancelToken
from conveyor.schemas import ApprovalDecision, FailureKind, RunStatus, StageOutcome


def gated_pipeline(timeout=5):
    return pipeline(
        stages=[
            {
                'name': 'Approve',
                'steps': [
                    {
                        'kind': 'gate',
                        'message': 'Deploy build ${BUILD_NUMBER}?',
                        'ok': 'Deploy',
                        'timeout': timeout,
                    }
                ],
            },
            {'name': 'Deploy', 'steps': [sh('kubectl apply -f k8s/production/')]},
        ],
    )


class TestGateStep:
    @pytest.mark.asyncio
    async def test_approved_gate_continues(self, runner, collaborators, main_context):
        result = await runner.execute(gated_pipeline(), main_context)

        assert result.status == RunStatus.success
        assert result.outcome_of('Deploy') == StageOutcome.succeeded
        gate_id, message, timeout = collaborators.approvals.gates[0]
        assert gate_id == 'test-1/Approve/1'
        assert message == 'Deploy build 7?'
        assert timeout == 5

    @pytest.mark.asyncio
    async def test_rejected_gate_fails_the_stage(self, runner, collaborators, main_context):
        collaborators.approvals.decision = ApprovalDecision(
            approved=False, by='bob', comment='not today'
        )

        result = await runner.execute(gated_pipeline(), main_context)

        assert result.status == RunStatus.failure
        assert result.failure.kind == FailureKind.gate_rejected
        assert result.failure.step_kind == 'gate'
        assert 'bob' in result.failure.message
        assert collaborators.commands.calls == []

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_aborts(self, runner, collaborators, main_context):
        collaborators.approvals.decision = None

        async def cancel_soon():
            await asyncio.sleep(0.01)
            runner.cancel.cancel()

        canceller = asyncio.create_task(cancel_soon())
        result = await runner.execute(gated_pipeline(timeout=30), main_context)
        await canceller

        assert result.status == RunStatus.aborted
        assert result.outcome_of('Approve') == StageOutcome.aborted
        assert result.failure is None


class TestApprovalBroker:
    @pytest.mark.asyncio
    async def test_submit_resolves_pending_gate(self):
        broker = ApprovalBroker()
        waiter = asyncio.create_task(broker.wait('run/Approve/1', 'Deploy?', 5))
        await asyncio.sleep(0)

        assert [g.gate_id for g in broker.pending()] == ['run/Approve/1']
        assert broker.submit('run/Approve/1', ApprovalDecision(approved=True, by='a'))

        decision = await waiter
        assert decision.approved
        assert broker.pending() == []

    @pytest.mark.asyncio
    async def test_timeout_returns_none(self):
        broker = ApprovalBroker()
        assert await broker.wait('g', 'Deploy?', 0.01) is None
        assert not broker.submit('g', ApprovalDecision(approved=True))

    @pytest.mark.asyncio
    async def test_cancel_returns_none(self):
        broker = ApprovalBroker()
        token = CancelToken()
        waiter = asyncio.create_task(broker.wait('g', 'Deploy?', 30, token))
        await asyncio.sleep(0)
        token.cancel()
        assert await waiter is None
