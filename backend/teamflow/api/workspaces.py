from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from teamflow.api.deps import get_current_user
from teamflow.db.database import get_db
from teamflow.models.user import User
from teamflow.models.workspace import UserWorkspace, Workspace
from teamflow.services.auth_service import ADMIN_ROLES, AuthService, get_auth_service

router = APIRouter(prefix="/api/workspaces", tags=["workspaces"])

ROLES = ("owner", "admin", "member")


class WorkspaceCreate(BaseModel):
    name: str


class MemberAdd(BaseModel):
    user_id: str
    role: str = "member"


class WorkspaceResponse(BaseModel):
    id: str
    name: str
    role: str
    created_at: str


@router.get("", response_model=list[WorkspaceResponse])
async def list_workspaces(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(Workspace, UserWorkspace.role)
        .join(UserWorkspace, UserWorkspace.workspace_id == Workspace.id)
        .where(UserWorkspace.user_id == user.id)
        .order_by(Workspace.created_at.desc())
    )
    return [
        WorkspaceResponse(id=w.id, name=w.name, role=role, created_at=w.created_at.isoformat())
        for w, role in result.all()
    ]


@router.post("", response_model=WorkspaceResponse)
async def create_workspace(
    req: WorkspaceCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    name = req.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Name cannot be empty")

    workspace = Workspace(name=name)
    db.add(workspace)
    await db.flush()
    db.add(UserWorkspace(user_id=user.id, workspace_id=workspace.id, role="owner"))
    await db.commit()
    await db.refresh(workspace)

    return WorkspaceResponse(id=workspace.id, name=workspace.name, role="owner", created_at=workspace.created_at.isoformat())


@router.post("/{workspace_id}/members")
async def add_member(
    workspace_id: str,
    req: MemberAdd,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
):
    caller = await auth.require_membership(db, user.id, workspace_id, roles=ADMIN_ROLES)
    if req.role not in ROLES:
        raise HTTPException(status_code=400, detail=f"Role must be one of: {', '.join(ROLES)}")
    if await db.get(User, req.user_id) is None:
        raise HTTPException(status_code=404, detail="User not found")

    result = await db.execute(
        select(UserWorkspace).where(UserWorkspace.user_id == req.user_id, UserWorkspace.workspace_id == workspace_id)
    )
    membership = result.scalar_one_or_none()
    if caller.role != "owner" and (req.role == "owner" or (membership and membership.role == "owner")):
        raise HTTPException(status_code=403, detail="Only owners can change ownership")
    if membership:
        membership.role = req.role
    else:
        db.add(UserWorkspace(user_id=req.user_id, workspace_id=workspace_id, role=req.role))
    await db.commit()
    return {"detail": "Member saved", "user_id": req.user_id, "role": req.role}
