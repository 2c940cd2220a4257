"""Authentication dependencies: student/admin sessions and the voice agent shared secret."""

import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from models.student import Student
from models.user import User
from services.errors import SharedSecretInvalid
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)
logger = logging.getLogger(__name__)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        claims = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(user_id=claims.user_id, email=claims.email)


async def get_current_student(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> Student:
    result = await db.execute(select(Student).where(Student.user_id == auth.user_id))
    student = result.scalar_one_or_none()
    if student is None:
        raise HTTPException(status_code=403, detail="Student profile required.")
    return student


async def require_admin(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> User:
    user = await db.get(User, auth.user_id)
    if user is None or not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required.")
    return user


def verify_shared_secret(supplied: Optional[str], expected: Optional[str]) -> None:
    """Constant-time comparison of the x-internal-secret header."""
    expected_value = (expected or "").strip()
    if not expected_value:
        raise SharedSecretInvalid("VOICE_AGENT_SHARED_SECRET is not configured")
    if not supplied:
        raise SharedSecretInvalid("X-Internal-Secret header is required")
    if not hmac.compare_digest(supplied.encode("utf-8"), expected_value.encode("utf-8")):
        raise SharedSecretInvalid("Invalid internal secret provided")


async def require_internal_secret(
    request: Request,
    x_internal_secret: Optional[str] = Header(default=None),
) -> None:
    """Service-to-service authentication for voice agent callbacks."""
    try:
        verify_shared_secret(x_internal_secret, settings.VOICE_AGENT_SHARED_SECRET)
    except SharedSecretInvalid as exc:
        logger.error(
            "Rejected internal call",
            extra={"path": request.url.path, "client": request.client.host if request.client else None},
        )
        raise HTTPException(
            status_code=401,
            detail={"error": "Invalid authentication", "message": str(exc)},
        ) from exc
