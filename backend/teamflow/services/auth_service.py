from datetime import datetime, timedelta, timezone
from functools import lru_cache

from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from teamflow.config import Settings, get_settings
from teamflow.exceptions import PreconditionDenied
from teamflow.models.workspace import UserWorkspace

ADMIN_ROLES = ("owner", "admin")


class AuthService:
    """Token issuing, password hashing and workspace membership checks."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

    def hash_password(self, password: str) -> str:
        return self.pwd_context.hash(password)

    def verify_password(self, password: str, hashed_password: str) -> bool:
        if not hashed_password:
            return False
        return self.pwd_context.verify(password, hashed_password)

    def create_access_token(self, user_id: str) -> str:
        expire = datetime.now(timezone.utc) + timedelta(minutes=self.settings.ACCESS_TOKEN_EXPIRE_MINUTES)
        return jwt.encode({"sub": user_id, "exp": expire}, self.settings.SECRET_KEY, algorithm=self.settings.ALGORITHM)

    def decode_token(self, token: str) -> str:
        """Return the user id carried by ``token``."""
        try:
            payload = jwt.decode(token, self.settings.SECRET_KEY, algorithms=[self.settings.ALGORITHM])
        except JWTError:
            raise PreconditionDenied("Invalid token", status_code=401)
        user_id = payload.get("sub")
        if not user_id:
            raise PreconditionDenied("Invalid token", status_code=401)
        return user_id

    async def require_membership(
        self,
        db: AsyncSession,
        user_id: str,
        workspace_id: str,
        roles: tuple[str, ...] | None = None,
    ) -> UserWorkspace:
        query = select(UserWorkspace).where(
            UserWorkspace.user_id == user_id,
            UserWorkspace.workspace_id == workspace_id,
        )
        if roles:
            query = query.where(UserWorkspace.role.in_(roles))
        result = await db.execute(query)
        membership = result.scalar_one_or_none()
        if membership is None:
            raise PreconditionDenied("Access denied", status_code=403)
        return membership


@lru_cache()
def get_auth_service() -> AuthService:
    return AuthService(get_settings())
