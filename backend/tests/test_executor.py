"""Tests for the workflow run executor."""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any

import pytest
from sqlalchemy import func, inspect, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from teamflow.exceptions import DefinitionNotFound, PreconditionDenied
from teamflow.models.records import Channel, Message, Task
from teamflow.models.workflow import Workflow
from teamflow.models.workflow_run import WorkflowRun
from teamflow.services.actions import ActionHandler
from teamflow.services.executor_service import ExecutorService
from teamflow.services.run_queue import RunQueue
from tests.conftest import count_runs, fetch_run, make_workflow


class BlockingAction(ActionHandler):
    action_type = "block"

    def __init__(self):
        self.started = asyncio.Event()

    async def execute(self, config: dict, trigger_data: Any) -> dict:
        self.started.set()
        await asyncio.Event().wait()
        return {}


def _handler(registry, action_type):
    return registry.get(action_type)


@pytest.mark.unit
class TestRunLifecycle:
    async def test_all_actions_succeed(self, executor, registry, db, session_factory, workspace) -> None:
        actions = [{"type": "record", "config": {"n": i}} for i in range(3)]
        workflow = await make_workflow(db, workspace.id, actions)

        run = await executor.start_run(workflow, db, trigger_data={"source": "test"})
        await executor.queue.join()

        run = await fetch_run(session_factory, run.id)
        results = json.loads(run.result_json)
        assert run.status == "completed"
        assert run.error_message is None
        assert [r["result"] for r in results] == ["success"] * 3
        assert [r["action"] for r in results] == ["record"] * 3
        assert run.completed_at is not None
        assert run.completed_at >= run.started_at
        assert len(_handler(registry, "record").calls) == 3

    @pytest.mark.parametrize(("total", "succeeded"), [(1, 0), (3, 0), (3, 1), (5, 3)])
    async def test_stops_at_first_failure(
        self, executor, registry, db, session_factory, workspace, total: int, succeeded: int
    ) -> None:
        actions = [{"type": "record"} for _ in range(succeeded)] + [{"type": "explode"}]
        actions += [{"type": "record"} for _ in range(total - succeeded - 1)]
        workflow = await make_workflow(db, workspace.id, actions)

        run = await executor.start_run(workflow, db)
        await executor.queue.join()

        run = await fetch_run(session_factory, run.id)
        results = json.loads(run.result_json)
        assert run.status == "failed"
        assert run.error_message == "downstream rejected the request"
        assert len(results) == succeeded + 1
        assert results[-1] == {"action": "explode", "result": "error", "error": "downstream rejected the request"}
        assert len(_handler(registry, "record").calls) == succeeded
        assert _handler(registry, "explode").calls == 1

    async def test_unknown_action_type(self, executor, db, session_factory, workspace) -> None:
        workflow = await make_workflow(db, workspace.id, [{"type": "not_a_real_action"}, {"type": "record"}])

        run = await executor.start_run(workflow, db)
        await executor.queue.join()

        run = await fetch_run(session_factory, run.id)
        assert run.status == "failed"
        assert run.error_message == "Unknown action type: not_a_real_action"
        assert json.loads(run.result_json) == [
            {"action": "not_a_real_action", "result": "error", "error": "Unknown action type: not_a_real_action"}
        ]

    async def test_empty_workflow_completes(self, executor, db, session_factory, workspace) -> None:
        workflow = await make_workflow(db, workspace.id, [])

        run = await executor.start_run(workflow, db)
        await executor.queue.join()

        run = await fetch_run(session_factory, run.id)
        assert run.status == "completed"
        assert json.loads(run.result_json) == []

    async def test_completed_at_only_when_terminal(self, executor, registry, db, session_factory, workspace) -> None:
        registry.register(BlockingAction())
        workflow = await make_workflow(db, workspace.id, [{"type": "block"}])

        run = await executor.start_run(workflow, db)
        await registry.get("block").started.wait()

        observed = await fetch_run(session_factory, run.id)
        assert observed.status == "running"
        assert observed.completed_at is None
        assert observed.result_json is None

        assert executor.cancel_run(run.id)
        await executor.queue.join()

        observed = await fetch_run(session_factory, run.id)
        assert observed.status == "failed"
        assert observed.completed_at is not None

    async def test_missing_definition(self, executor, db, session_factory) -> None:
        run = WorkflowRun(workflow_id="deleted-workflow", status="running", started_at=datetime.now(timezone.utc))
        db.add(run)
        await db.commit()

        await executor.execute_run(run.id, "deleted-workflow")

        run = await fetch_run(session_factory, run.id)
        assert run.status == "failed"
        assert run.error_message == "Workflow not found"
        assert run.result_json is None
        assert run.completed_at is not None

    async def test_invalid_actions_payload(self, executor, db, session_factory, workspace) -> None:
        workflow = await make_workflow(db, workspace.id, [])
        workflow.actions_json = "{not json"
        await db.commit()

        run = await executor.start_run(workflow, db)
        await executor.queue.join()

        run = await fetch_run(session_factory, run.id)
        assert run.status == "failed"
        assert run.error_message

    async def test_terminal_run_is_not_rewritten(self, executor, db, session_factory, workspace) -> None:
        workflow = await make_workflow(db, workspace.id, [{"type": "record"}])
        run = await executor.start_run(workflow, db)
        await executor.queue.join()
        first = await fetch_run(session_factory, run.id)

        await executor._finish(run.id, "failed", [], "late failure")

        second = await fetch_run(session_factory, run.id)
        assert second.status == "completed"
        assert second.error_message is None
        assert second.completed_at == first.completed_at


def _gated_session_factory(engine, writing: asyncio.Event, gate: asyncio.Event) -> async_sessionmaker[AsyncSession]:
    """Sessions whose commit announces itself and then waits for ``gate``."""

    class GatedSession(AsyncSession):
        async def commit(self) -> None:
            writing.set()
            await gate.wait()
            await super().commit()

    return async_sessionmaker(engine, class_=GatedSession, expire_on_commit=False)


@pytest.mark.unit
class TestCancellation:
    async def test_cancel_before_first_step(self, executor, db, session_factory, workspace) -> None:
        workflow = await make_workflow(db, workspace.id, [{"type": "record"}])

        run = await executor.start_run(workflow, db)
        assert executor.cancel_run(run.id)
        await executor.queue.join()

        run = await fetch_run(session_factory, run.id)
        assert run.status == "failed"
        assert run.error_message == "Run cancelled"
        assert run.result_json is None
        assert run.completed_at is not None

    async def test_shutdown_before_first_step(self, executor, registry, db, session_factory, workspace) -> None:
        workflow = await make_workflow(db, workspace.id, [{"type": "record"}])

        run = await executor.start_run(workflow, db)
        await executor.queue.shutdown()

        run = await fetch_run(session_factory, run.id)
        assert run.status == "failed"
        assert run.error_message == "Run cancelled"
        assert run.completed_at is not None
        assert registry.get("record").calls == []
        assert len(executor.queue) == 0

    async def test_shutdown_mid_run_keeps_partial_results(self, executor, registry, db, session_factory, workspace) -> None:
        registry.register(BlockingAction())
        workflow = await make_workflow(db, workspace.id, [{"type": "record"}, {"type": "block"}, {"type": "record"}])

        run = await executor.start_run(workflow, db)
        await registry.get("block").started.wait()
        await executor.queue.shutdown()

        run = await fetch_run(session_factory, run.id)
        assert run.status == "failed"
        assert run.error_message == "Run cancelled"
        assert run.completed_at is not None
        assert [r["result"] for r in json.loads(run.result_json)] == ["success"]

    async def test_cancel_during_terminal_write(self, engine, registry, db, session_factory, workspace) -> None:
        writing, gate = asyncio.Event(), asyncio.Event()
        executor = ExecutorService(
            registry, session_factory=_gated_session_factory(engine, writing, gate), queue=RunQueue()
        )
        workflow = await make_workflow(db, workspace.id, [{"type": "record"}])

        run = await executor.start_run(workflow, db)
        await writing.wait()
        assert executor.cancel_run(run.id)
        gate.set()
        await executor.queue.join()

        run = await fetch_run(session_factory, run.id)
        assert run.status == "completed"
        assert run.completed_at is not None
        assert len(json.loads(run.result_json)) == 1

    async def test_shutdown_during_cancellation_write(self, engine, registry, db, session_factory, workspace) -> None:
        registry.register(BlockingAction())
        writing, gate = asyncio.Event(), asyncio.Event()
        executor = ExecutorService(
            registry, session_factory=_gated_session_factory(engine, writing, gate), queue=RunQueue()
        )
        workflow = await make_workflow(db, workspace.id, [{"type": "block"}])

        run = await executor.start_run(workflow, db)
        await registry.get("block").started.wait()
        assert executor.cancel_run(run.id)
        await writing.wait()

        shutdown = asyncio.create_task(executor.queue.shutdown())
        await asyncio.sleep(0)
        gate.set()
        await shutdown

        run = await fetch_run(session_factory, run.id)
        assert run.status == "failed"
        assert run.error_message == "Run cancelled"
        assert run.completed_at is not None
        assert len(executor.queue) == 0


@pytest.mark.unit
class TestRunRecords:
    async def test_started_at_matches_stored_value(self, executor, db, session_factory, workspace) -> None:
        workflow = await make_workflow(db, workspace.id, [{"type": "record"}])

        run = await executor.start_run(workflow, db)
        await executor.queue.join()

        stored = await fetch_run(session_factory, run.id)
        assert run.started_at.tzinfo is None
        assert stored.started_at == run.started_at

    async def test_loading_a_workflow_leaves_runs_unloaded(self, executor, db, session_factory, workspace) -> None:
        workflow = await make_workflow(db, workspace.id, [{"type": "record"}])
        await executor.start_run(workflow, db)
        await executor.queue.join()

        async with session_factory() as session:
            loaded = await session.get(Workflow, workflow.id)
            assert "runs" in inspect(loaded).unloaded


@pytest.mark.unit
class TestInvocation:
    async def test_inactive_workflow_rejected(self, executor, db, session_factory, workspace) -> None:
        workflow = await make_workflow(db, workspace.id, [{"type": "record"}], is_active=False)

        with pytest.raises(PreconditionDenied, match="Workflow is not active"):
            await executor.start_run(workflow, db)

        assert await count_runs(session_factory, workflow.id) == 0
        assert len(executor.queue) == 0

    async def test_invoke_unknown_workflow(self, executor, db) -> None:
        with pytest.raises(DefinitionNotFound):
            await executor.invoke("missing", db)

    async def test_invoke_records_user_and_trigger_data(self, executor, db, session_factory, workspace, owner) -> None:
        workflow = await make_workflow(db, workspace.id, [{"type": "record"}])

        run = await executor.invoke(workflow.id, db, user_id=owner.id, trigger_data={"ticket": 7})
        assert run.status == "running"
        await executor.queue.join()

        run = await fetch_run(session_factory, run.id)
        assert run.user_id == owner.id
        assert json.loads(run.trigger_data_json) == {"ticket": 7}

    async def test_concurrent_runs_are_independent(self, executor, db, session_factory, workspace) -> None:
        workflow = await make_workflow(db, workspace.id, [{"type": "record"}, {"type": "explode"}])

        failing = await executor.start_run(workflow, db)
        passing = await executor.start_run(workflow, db, trigger_data={"succeed": True})
        await executor.queue.join()

        failing = await fetch_run(session_factory, failing.id)
        passing = await fetch_run(session_factory, passing.id)
        assert failing.id != passing.id
        assert failing.status == "failed"
        assert len(json.loads(failing.result_json)) == 2
        assert passing.status == "completed"
        assert [r["result"] for r in json.loads(passing.result_json)] == ["success", "success"]

    async def test_action_timeout(self, registry, session_factory, db, workspace) -> None:
        registry.register(BlockingAction())
        executor = ExecutorService(registry, session_factory=session_factory, queue=RunQueue(), action_timeout=0.05)
        workflow = await make_workflow(db, workspace.id, [{"type": "block"}, {"type": "record"}])

        run = await executor.start_run(workflow, db)
        await executor.queue.join()

        run = await fetch_run(session_factory, run.id)
        assert run.status == "failed"
        assert run.error_message == "Action block timed out after 0.05s"
        assert len(json.loads(run.result_json)) == 1
        assert registry.get("record").calls == []


@pytest.mark.integration
class TestEndToEnd:
    ACTIONS = [
        {"type": "send_message", "config": {"channelId": "C1", "message": "hi"}},
        {"type": "create_task", "config": {"title": "T"}},
    ]

    async def test_message_then_task(self, executor, db, session_factory, workspace) -> None:
        db.add(Channel(id="C1", workspace_id=workspace.id, name="general"))
        await db.commit()
        workflow = await make_workflow(db, workspace.id, self.ACTIONS)

        run = await executor.start_run(workflow, db)
        await executor.queue.join()

        run = await fetch_run(session_factory, run.id)
        results = json.loads(run.result_json)
        assert run.status == "completed"
        assert [(r["action"], r["result"]) for r in results] == [
            ("send_message", "success"),
            ("create_task", "success"),
        ]
        assert results[0]["data"]["messageId"]
        assert results[1]["data"]["taskId"]

    async def test_message_failure_stops_task(self, executor, db, session_factory, workspace) -> None:
        workflow = await make_workflow(db, workspace.id, self.ACTIONS)

        run = await executor.start_run(workflow, db)
        await executor.queue.join()

        run = await fetch_run(session_factory, run.id)
        assert run.status == "failed"
        assert run.error_message == "Channel C1 not found"
        assert len(json.loads(run.result_json)) == 1
        task_count = await db.execute(select(func.count()).select_from(Task))
        assert task_count.scalar_one() == 0

    async def test_trigger_data_reaches_action_config(self, executor, db, session_factory, workspace) -> None:
        db.add(Channel(id="C1", workspace_id=workspace.id, name="general"))
        await db.commit()
        workflow = await make_workflow(
            db, workspace.id, [{"type": "send_message", "config": {"channelId": "C1", "message": "New lead: {{lead}}"}}]
        )

        run = await executor.start_run(workflow, db, trigger_data={"lead": "Ada"})
        await executor.queue.join()

        run = await fetch_run(session_factory, run.id)
        message_id = json.loads(run.result_json)[0]["data"]["messageId"]
        message = await db.get(Message, message_id)
        assert message.content == "New lead: Ada"
