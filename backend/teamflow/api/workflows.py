import json
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from teamflow.api.deps import get_current_user, get_executor
from teamflow.api.runs import RunResponse, run_response
from teamflow.db.database import get_db
from teamflow.models.user import User
from teamflow.models.workflow import TRIGGER_TYPES, Workflow
from teamflow.models.workflow_run import WorkflowRun
from teamflow.services.auth_service import ADMIN_ROLES, AuthService, get_auth_service
from teamflow.services.executor_service import ExecutorService
from teamflow.services.scheduler_service import parse_cron, remove_workflow_schedule, sync_workflow_schedule

router = APIRouter(prefix="/api/workflows", tags=["workflows"])


class ActionDescriptor(BaseModel):
    type: str
    config: dict[str, Any] = {}


class WorkflowCreate(BaseModel):
    workspace_id: str
    name: str
    description: str | None = None
    trigger_type: str
    trigger_config: dict[str, Any] = {}
    actions: list[ActionDescriptor] = []
    is_active: bool = True


class WorkflowUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    trigger_type: str | None = None
    trigger_config: dict[str, Any] | None = None
    actions: list[ActionDescriptor] | None = None
    is_active: bool | None = None


class ExecutionRequest(BaseModel):
    trigger_data: Any = None


class WorkflowResponse(BaseModel):
    id: str
    workspace_id: str
    name: str
    description: str | None
    trigger_type: str
    trigger_config: dict[str, Any]
    actions: list[dict[str, Any]]
    is_active: bool
    created_by: str | None
    created_at: str
    updated_at: str
    execution_count: int = 0
    executions: list[RunResponse] = []


async def _workflow_response(db: AsyncSession, workflow: Workflow, run_limit: int = 10) -> WorkflowResponse:
    execution_count = await db.scalar(
        select(func.count()).select_from(WorkflowRun).where(WorkflowRun.workflow_id == workflow.id)
    )
    result = await db.execute(
        select(WorkflowRun)
        .where(WorkflowRun.workflow_id == workflow.id)
        .order_by(WorkflowRun.started_at.desc())
        .limit(run_limit)
    )
    runs = result.scalars().all()
    return WorkflowResponse(
        id=workflow.id,
        workspace_id=workflow.workspace_id,
        name=workflow.name,
        description=workflow.description,
        trigger_type=workflow.trigger_type,
        trigger_config=json.loads(workflow.trigger_config_json or "{}"),
        actions=json.loads(workflow.actions_json or "[]"),
        is_active=workflow.is_active,
        created_by=workflow.created_by,
        created_at=workflow.created_at.isoformat(),
        updated_at=workflow.updated_at.isoformat(),
        execution_count=execution_count or 0,
        executions=[run_response(r) for r in runs],
    )


def _validate_trigger(trigger_type: str, trigger_config: dict[str, Any]):
    if trigger_type not in TRIGGER_TYPES:
        raise HTTPException(status_code=400, detail=f"Trigger type must be one of: {', '.join(TRIGGER_TYPES)}")
    if trigger_type == "time" and trigger_config.get("cron"):
        try:
            parse_cron(trigger_config["cron"])
        except ValueError as e:
            raise HTTPException(status_code=400, detail=f"Invalid cron expression: {e}")


async def _get_workflow(workflow_id: str, db: AsyncSession) -> Workflow:
    workflow = await db.get(Workflow, workflow_id)
    if not workflow:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return workflow


@router.get("", response_model=list[WorkflowResponse])
async def list_workflows(
    workspace_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
):
    await auth.require_membership(db, user.id, workspace_id)
    result = await db.execute(
        select(Workflow).where(Workflow.workspace_id == workspace_id).order_by(Workflow.created_at.desc())
    )
    return [await _workflow_response(db, w) for w in result.scalars().all()]


@router.get("/{workflow_id}", response_model=WorkflowResponse)
async def get_workflow(
    workflow_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
):
    workflow = await _get_workflow(workflow_id, db)
    await auth.require_membership(db, user.id, workflow.workspace_id)
    return await _workflow_response(db, workflow, run_limit=50)


@router.post("", response_model=WorkflowResponse)
async def create_workflow(
    req: WorkflowCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
    executor: ExecutorService = Depends(get_executor),
):
    await auth.require_membership(db, user.id, req.workspace_id)
    if not req.name.strip():
        raise HTTPException(status_code=400, detail="Name cannot be empty")
    _validate_trigger(req.trigger_type, req.trigger_config)

    workflow = Workflow(
        workspace_id=req.workspace_id,
        name=req.name,
        description=req.description,
        trigger_type=req.trigger_type,
        trigger_config_json=json.dumps(req.trigger_config),
        actions_json=json.dumps([a.model_dump() for a in req.actions]),
        is_active=req.is_active,
        created_by=user.id,
    )
    db.add(workflow)
    await db.commit()
    await db.refresh(workflow)

    sync_workflow_schedule(workflow, executor)
    return await _workflow_response(db, workflow)


@router.patch("/{workflow_id}", response_model=WorkflowResponse)
async def update_workflow(
    workflow_id: str,
    req: WorkflowUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
    executor: ExecutorService = Depends(get_executor),
):
    workflow = await _get_workflow(workflow_id, db)
    await auth.require_membership(db, user.id, workflow.workspace_id)

    updates = req.model_dump(exclude_unset=True)
    if "trigger_type" in updates or "trigger_config" in updates:
        trigger_config = updates.get("trigger_config")
        if trigger_config is None:
            trigger_config = json.loads(workflow.trigger_config_json or "{}")
        _validate_trigger(updates.get("trigger_type") or workflow.trigger_type, trigger_config)

    for field, value in updates.items():
        if value is None and field in ("name", "trigger_type", "trigger_config", "is_active"):
            continue
        if field == "trigger_config":
            workflow.trigger_config_json = json.dumps(value)
        elif field == "actions":
            workflow.actions_json = json.dumps(value or [])
        else:
            setattr(workflow, field, value)

    await db.commit()
    await db.refresh(workflow)

    sync_workflow_schedule(workflow, executor)
    return await _workflow_response(db, workflow)


@router.delete("/{workflow_id}")
async def delete_workflow(
    workflow_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
):
    workflow = await _get_workflow(workflow_id, db)
    await auth.require_membership(db, user.id, workflow.workspace_id, roles=ADMIN_ROLES)

    remove_workflow_schedule(workflow.id)
    await db.delete(workflow)
    await db.commit()
    return {"success": True}


@router.get("/{workflow_id}/executions", response_model=list[RunResponse])
async def list_executions(
    workflow_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
):
    workflow = await _get_workflow(workflow_id, db)
    await auth.require_membership(db, user.id, workflow.workspace_id)

    result = await db.execute(
        select(WorkflowRun).where(WorkflowRun.workflow_id == workflow_id).order_by(WorkflowRun.started_at.desc())
    )
    return [run_response(r) for r in result.scalars().all()]


@router.post("/{workflow_id}/executions", response_model=RunResponse)
async def execute_workflow(
    workflow_id: str,
    req: ExecutionRequest | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
    executor: ExecutorService = Depends(get_executor),
):
    workflow = await _get_workflow(workflow_id, db)
    await auth.require_membership(db, user.id, workflow.workspace_id)

    run = await executor.start_run(workflow, db, user_id=user.id, trigger_data=req.trigger_data if req else None)
    return run_response(run)


@router.post("/{workflow_id}/trigger", response_model=RunResponse)
async def api_trigger(
    workflow_id: str,
    req: ExecutionRequest | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
    executor: ExecutorService = Depends(get_executor),
):
    """Start a run of an API-triggered workflow."""
    workflow = await _get_workflow(workflow_id, db)
    await auth.require_membership(db, user.id, workflow.workspace_id)
    if workflow.trigger_type != "api":
        raise HTTPException(status_code=400, detail="Workflow is not API-triggered")

    run = await executor.start_run(workflow, db, user_id=user.id, trigger_data=req.trigger_data if req else None)
    return run_response(run)
