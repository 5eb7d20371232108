import json
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from teamflow.api.deps import get_current_user, get_executor
from teamflow.db.database import get_db
from teamflow.models.user import User
from teamflow.models.workflow_run import WorkflowRun
from teamflow.services.auth_service import AuthService, get_auth_service
from teamflow.services.executor_service import ExecutorService

router = APIRouter(prefix="/api/runs", tags=["runs"])


class RunResponse(BaseModel):
    id: str
    workflow_id: str
    user_id: str | None = None
    trigger_data: Any = None
    status: str
    result: list[dict] | None = None
    error_message: str | None = None
    started_at: str
    completed_at: str | None = None


def run_response(run: WorkflowRun) -> RunResponse:
    return RunResponse(
        id=run.id,
        workflow_id=run.workflow_id,
        user_id=run.user_id,
        trigger_data=json.loads(run.trigger_data_json) if run.trigger_data_json else None,
        status=run.status,
        result=json.loads(run.result_json) if run.result_json else None,
        error_message=run.error_message,
        started_at=run.started_at.isoformat(),
        completed_at=run.completed_at.isoformat() if run.completed_at else None,
    )


async def _get_authorized_run(run_id: str, user: User, db: AsyncSession, auth: AuthService) -> WorkflowRun:
    run = await db.get(WorkflowRun, run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    await auth.require_membership(db, user.id, run.workflow.workspace_id)
    return run


@router.get("/{run_id}", response_model=RunResponse)
async def get_run(
    run_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
):
    run = await _get_authorized_run(run_id, user, db, auth)
    return run_response(run)


@router.post("/{run_id}/cancel")
async def cancel_run(
    run_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
    executor: ExecutorService = Depends(get_executor),
):
    run = await _get_authorized_run(run_id, user, db, auth)
    if run.is_terminal:
        raise HTTPException(status_code=409, detail=f"Run already {run.status}")
    if not executor.cancel_run(run.id):
        raise HTTPException(status_code=409, detail="Run is not executing in this process")
    return {"detail": "Cancel requested"}
