"""Tests for the run registry, the run store and the trigger service."""

import asyncio

import pytest

from conftest import pipeline, sh
from conveyor.config import ConcurrencyPolicy
from conveyor.exceptions import ConfigurationError, RunAlreadyActive
from conveyor.runner import RunRegistry, run_pipeline
from conveyor.schemas import RunStatus, TriggerEvent, TriggerInfo
from conveyor.store import RunStore


def trigger(build_number, branch='main', change_id=None):
    return TriggerInfo(
        event=(
            TriggerEvent.change_proposal if change_id else TriggerEvent.main_line_update
        ),
        branch=branch,
        change_id=change_id,
        build_number=build_number,
    )


class TestRunRegistry:
    @pytest.mark.asyncio
    async def test_reject_policy(self):
        registry = RunRegistry()
        async with registry.claim('app', 'app-1', ConcurrencyPolicy.reject):
            assert registry.is_active('app')
            with pytest.raises(RunAlreadyActive):
                async with registry.claim('app', 'app-2', ConcurrencyPolicy.reject):
                    pass
        assert not registry.is_active('app')

    @pytest.mark.asyncio
    async def test_queue_policy_serializes_runs(self):
        registry = RunRegistry()
        order = []

        async def run(run_id):
            async with registry.claim('app', run_id, ConcurrencyPolicy.queue):
                order.append(f'{run_id} start')
                await asyncio.sleep(0.01)
                order.append(f'{run_id} end')

        await asyncio.gather(run('app-1'), run('app-2'))
        assert order == ['app-1 start', 'app-1 end', 'app-2 start', 'app-2 end']

    @pytest.mark.asyncio
    async def test_other_pipelines_are_independent(self):
        registry = RunRegistry()
        async with registry.claim('app', 'app-1', ConcurrencyPolicy.reject):
            async with registry.claim('lib', 'lib-1', ConcurrencyPolicy.reject):
                assert registry.active_runs == ['app-1', 'lib-1']

    @pytest.mark.asyncio
    async def test_cancel_active_run(self):
        registry = RunRegistry()
        async with registry.claim('app', 'app-1', ConcurrencyPolicy.queue) as token:
            assert registry.cancel('app-1', 'stop')
            assert token.cancelled
            assert token.reason == 'stop'
        assert not registry.cancel('app-1')


class TestRunStore:
    def test_next_build_number_reserves_the_run_dir(self, tmp_path):
        store = RunStore(tmp_path)
        assert store.next_build_number('app') == 1
        assert store.next_build_number('app') == 2
        assert store.build_numbers('app') == [1, 2]

    @pytest.mark.asyncio
    async def test_run_pipeline_persists_and_prunes(self, tmp_path, collaborators):
        store = RunStore(tmp_path / 'runs')
        definition = pipeline(
            name='app',
            options={'keep_runs': 2},
            stages=[{'name': 'Build', 'steps': [sh('make')]}],
        )
        for n in (1, 2, 3):
            result = await run_pipeline(
                definition,
                trigger(n),
                registry=RunRegistry(),
                store=store,
                collaborators=collaborators,
                workdir=tmp_path,
            )
            assert result.status == RunStatus.success
            assert result.run_id == f'app-{n}'

        assert store.build_numbers('app') == [2, 3]
        loaded = store.load('app', 3)
        assert loaded.status == RunStatus.success
        assert loaded.outcome_of('Build') == result.outcome_of('Build')
        assert store.load('app', 1) is None

    @pytest.mark.asyncio
    async def test_invalid_pipeline_is_rejected_before_running(
        self, tmp_path, collaborators
    ):
        store = RunStore(tmp_path / 'runs')
        definition = pipeline(name='app', stages=[])
        with pytest.raises(ConfigurationError):
            await run_pipeline(
                definition,
                trigger(1),
                registry=RunRegistry(),
                store=store,
                collaborators=collaborators,
                workdir=tmp_path,
            )
        assert store.build_numbers('app') == []

    @pytest.mark.asyncio
    async def test_busy_pipeline_rejects_second_trigger(self, tmp_path, collaborators):
        registry = RunRegistry()
        store = RunStore(tmp_path / 'runs')
        definition = pipeline(
            name='app', stages=[{'name': 'Build', 'steps': [sh('make')]}]
        )
        async with registry.claim('app', 'app-1', ConcurrencyPolicy.reject):
            with pytest.raises(RunAlreadyActive):
                await run_pipeline(
                    definition,
                    trigger(2),
                    registry=registry,
                    store=store,
                    collaborators=collaborators,
                    workdir=tmp_path,
                    policy=ConcurrencyPolicy.reject,
                )
        assert collaborators.commands.calls == []
