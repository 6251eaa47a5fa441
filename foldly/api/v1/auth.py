from fastapi import Depends, Header
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession
from foldly.db.session import get_db
from foldly.core.actor import Actor
from foldly.core.errors import Unauthorized
from foldly.core.security import decode_token
from foldly.services.permissions import OtpSender, _send_code_via_celery
from foldly.services.storage import StorageGateway, get_storage_service
from foldly.services.workspaces import WorkspaceService

# Tokens are issued by the identity provider; tokenUrl only documents that
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/token")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/token", auto_error=False)


def get_storage() -> StorageGateway:
    return get_storage_service()


def get_otp_sender() -> OtpSender:
    return _send_code_via_celery


async def _actor_from_token(token: str, db: AsyncSession) -> Actor:
    payload = decode_token(token)
    if payload is None:
        raise Unauthorized("Could not validate credentials")

    user_id = payload.get("sub")
    email = payload.get("email")
    if not user_id or not email:
        raise Unauthorized("Token is missing the subject or email claim")

    actor = Actor.user(str(user_id), email, email_verified=bool(payload.get("email_verified", True)))
    # First authenticated request doubles as the signup hook
    await WorkspaceService(db).provision_user(actor.user_id, actor.email, payload.get("name"))
    return actor


async def get_current_actor(token: str = Depends(oauth2_scheme), db: AsyncSession = Depends(get_db)) -> Actor:
    """Authenticated caller"""
    return await _actor_from_token(token, db)


async def get_optional_actor(
    token: str | None = Depends(optional_oauth2_scheme),
    x_uploader_email: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
) -> Actor:
    """Authenticated caller, or an anonymous uploader with a claimed email."""
    if token:
        return await _actor_from_token(token, db)
    return Actor.anonymous(x_uploader_email)
