"""Shared fixtures: a throwaway SQLite database, an executor wired to it, and an HTTP client."""

import json
from typing import Any

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from teamflow.config import Settings
from teamflow.db.database import create_engine, create_session_factory, get_db, init_db
from teamflow.models.user import User
from teamflow.models.workflow import Workflow
from teamflow.models.workflow_run import WorkflowRun
from teamflow.models.workspace import UserWorkspace, Workspace
from teamflow.services.actions import ActionHandler, ActionRegistry, build_default_registry
from teamflow.services.auth_service import get_auth_service
from teamflow.services.executor_service import ExecutorService
from teamflow.services.run_queue import RunQueue


class RecordingAction(ActionHandler):
    """Succeeds and remembers every call."""

    def __init__(self, action_type: str = "record"):
        self.action_type = action_type
        self.calls: list[tuple[dict, Any]] = []

    async def execute(self, config: dict, trigger_data: Any) -> dict:
        self.calls.append((config, trigger_data))
        return {"call": len(self.calls)}


class FailingAction(ActionHandler):
    """Fails with a fixed message, unless the trigger data says otherwise."""

    def __init__(self, action_type: str = "explode", message: str = "downstream rejected the request"):
        self.action_type = action_type
        self.message = message
        self.calls = 0

    async def execute(self, config: dict, trigger_data: Any) -> dict:
        self.calls += 1
        if isinstance(trigger_data, dict) and trigger_data.get("succeed"):
            return {"skipped_failure": True}
        raise self.fail(self.message)


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'teamflow.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings() -> Settings:
    return Settings(EMAIL_BACKEND="log", SCHEDULER_ENABLED=False, ACTION_TIMEOUT_SECONDS=None)


@pytest.fixture
def registry(session_factory, settings) -> ActionRegistry:
    registry = build_default_registry(session_factory, settings)
    registry.register(RecordingAction())
    registry.register(FailingAction())
    return registry


@pytest.fixture
async def executor(registry, session_factory):
    executor = ExecutorService(registry, session_factory=session_factory, queue=RunQueue())
    yield executor
    await executor.queue.shutdown()


@pytest.fixture
async def owner(db) -> User:
    user = User(email="owner@example.com", name="Owner")
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def workspace(db, owner) -> Workspace:
    workspace = Workspace(name="Acme")
    db.add(workspace)
    await db.flush()
    db.add(UserWorkspace(user_id=owner.id, workspace_id=workspace.id, role="owner"))
    await db.commit()
    return workspace


async def make_workflow(
    db: AsyncSession,
    workspace_id: str,
    actions: list[dict],
    is_active: bool = True,
    trigger_type: str = "manual",
    trigger_config: dict | None = None,
) -> Workflow:
    workflow = Workflow(
        workspace_id=workspace_id,
        name="Test workflow",
        trigger_type=trigger_type,
        trigger_config_json=json.dumps(trigger_config or {}),
        actions_json=json.dumps(actions),
        is_active=is_active,
    )
    db.add(workflow)
    await db.commit()
    await db.refresh(workflow)
    return workflow


async def fetch_run(session_factory, run_id: str) -> WorkflowRun:
    async with session_factory() as session:
        return await session.get(WorkflowRun, run_id)


async def count_runs(session_factory, workflow_id: str) -> int:
    async with session_factory() as session:
        result = await session.execute(
            select(func.count()).select_from(WorkflowRun).where(WorkflowRun.workflow_id == workflow_id)
        )
        return result.scalar_one()


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {get_auth_service().create_access_token(user.id)}"}


@pytest.fixture
async def client(session_factory, executor):
    from teamflow.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.executor = executor
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
