from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from teamflow.db.database import get_db
from teamflow.exceptions import PreconditionDenied
from teamflow.models.user import User
from teamflow.services.auth_service import AuthService, get_auth_service
from teamflow.services.executor_service import ExecutorService

security = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
) -> User:
    user_id = auth.decode_token(credentials.credentials)
    user = await db.get(User, user_id)
    if user is None:
        raise PreconditionDenied("User not found", status_code=401)
    return user


def get_executor(request: Request) -> ExecutorService:
    return request.app.state.executor
