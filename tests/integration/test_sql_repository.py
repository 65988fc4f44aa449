"""
SQL Repository 集成测试（SQLite + aiosqlite）
"""
from datetime import timedelta

import pytest

from agentflow.core.registry import EngineRegistry
from agentflow.db.kv_store import InMemoryKeyValueStore
from agentflow.db.repositories.sql import SqlCheckpointRepository, SqlWorkflowRepository
from agentflow.db.session import create_engine, init_db, make_session_factory
from agentflow.models.constants import WorkflowStatus
from agentflow.models.domain import Artifact, Checkpoint, Workflow, utc_now


async def make_database(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path}/agentflow.db")
    await init_db(engine)
    return engine, make_session_factory(engine)


class TestSqlWorkflowRepository:

    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path, brief_and_arch_sequence):
        engine, factory = await make_database(tmp_path)
        repository = SqlWorkflowRepository(factory)
        try:
            workflow = Workflow(name="demo", sequence=brief_and_arch_sequence, context={"initiated_by": "acme"})
            workflow.add_artifact(Artifact(id="brief", content="# Brief", created_by="pm", step_index=0))
            workflow.current_step_index = 1
            await repository.save_workflow(workflow)

            loaded = await repository.load_workflow(workflow.id)

            assert loaded.name == "demo"
            assert loaded.tenant_id == "acme"
            assert loaded.current_step_index == 1
            assert loaded.artifacts["brief"].content == "# Brief"
            assert [s.agent_id for s in loaded.sequence] == ["pm", "architect"]
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_save_updates_existing_row(self, tmp_path, brief_and_arch_sequence):
        engine, factory = await make_database(tmp_path)
        repository = SqlWorkflowRepository(factory)
        try:
            workflow = Workflow(name="demo", sequence=brief_and_arch_sequence)
            await repository.save_workflow(workflow)

            workflow.status = WorkflowStatus.COMPLETED
            workflow.current_step_index = 2
            await repository.save_workflow(workflow)

            loaded = await repository.load_workflow(workflow.id)
            assert loaded.status == WorkflowStatus.COMPLETED
            assert loaded.current_step_index == 2
            assert len(await repository.list_workflows()) == 1
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_load_missing(self, tmp_path):
        engine, factory = await make_database(tmp_path)
        try:
            assert await SqlWorkflowRepository(factory).load_workflow("missing") is None
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_list_by_status_and_age(self, tmp_path, brief_and_arch_sequence):
        engine, factory = await make_database(tmp_path)
        repository = SqlWorkflowRepository(factory)
        try:
            old = Workflow(
                name="old",
                sequence=brief_and_arch_sequence,
                status=WorkflowStatus.RUNNING,
                updated_at=utc_now() - timedelta(hours=2),
            )
            fresh = Workflow(name="fresh", sequence=brief_and_arch_sequence, status=WorkflowStatus.RUNNING)
            done = Workflow(name="done", sequence=brief_and_arch_sequence, status=WorkflowStatus.COMPLETED)
            for workflow in (old, fresh, done):
                await repository.save_workflow(workflow)

            running = await repository.list_workflows(status=WorkflowStatus.RUNNING)
            stale = await repository.list_workflows(
                status=WorkflowStatus.RUNNING,
                updated_before=utc_now() - timedelta(hours=1),
            )

            assert {w.name for w in running} == {"old", "fresh"}
            assert [w.name for w in stale] == ["old"]
        finally:
            await engine.dispose()


class TestSqlCheckpointRepository:

    @pytest.mark.asyncio
    async def test_checkpoints_are_ordered(self, tmp_path, brief_and_arch_sequence):
        engine, factory = await make_database(tmp_path)
        repository = SqlCheckpointRepository(factory)
        try:
            workflow = Workflow(name="demo", sequence=brief_and_arch_sequence)
            now = utc_now()
            first = Checkpoint(
                workflow_id=workflow.id,
                label="workflow_initialized",
                step_index=0,
                status=WorkflowStatus.INITIALIZING,
                snapshot=workflow.model_dump(mode="json"),
                created_at=now - timedelta(seconds=10),
            )
            second = Checkpoint(
                workflow_id=workflow.id,
                label="step_completed",
                step_index=1,
                status=WorkflowStatus.RUNNING,
                snapshot=workflow.model_dump(mode="json"),
                created_at=now,
            )
            await repository.add_checkpoint(second)
            await repository.add_checkpoint(first)

            checkpoints = await repository.list_checkpoints(workflow.id)
            latest = await repository.latest_checkpoint(workflow.id)

            assert [c.label for c in checkpoints] == ["workflow_initialized", "step_completed"]
            assert latest.id == second.id
            assert latest.restore().name == "demo"
            assert await repository.latest_checkpoint("other") is None
        finally:
            await engine.dispose()


class TestRegistryOnSql:

    @pytest.mark.asyncio
    async def test_workflow_runs_against_sql_repositories(self, tmp_path, loader, provider, notifier, engine_config):
        db_engine, factory = await make_database(tmp_path)
        registry = EngineRegistry(
            loader=loader,
            provider=provider,
            workflow_repository=SqlWorkflowRepository(factory),
            checkpoint_repository=SqlCheckpointRepository(factory),
            kv_store=InMemoryKeyValueStore(),
            notifier=notifier,
            config=engine_config,
            db_engine=db_engine,
        )

        result = await registry.engine.start_workflow(
            {
                "sequence": [
                    {"agent_id": "pm", "action": "draft", "creates": "brief"},
                    {"agent_id": "architect", "action": "design", "requires": ["brief"], "creates": "arch"},
                ],
            }
        )
        await registry.lifecycle.drain()

        stored = await SqlWorkflowRepository(factory).load_workflow(result.workflow_id)
        assert stored.status == WorkflowStatus.COMPLETED
        assert list(stored.artifacts) == ["brief", "arch"]
        checkpoints = await registry.engine.list_checkpoints(result.workflow_id)
        assert [c.label for c in checkpoints] == ["workflow_initialized", "workflow_completed"]

        await registry.shutdown()
