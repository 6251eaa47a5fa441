import hmac
from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession
from foldly.db.session import get_db
from foldly.models.user import User
from foldly.api.v1.auth import get_current_actor, get_storage
from foldly.common.response import success
from foldly.config import settings
from foldly.core.actor import Actor
from foldly.core.errors import NotFound, Unauthorized
from foldly.services.storage import StorageGateway
from foldly.services.workspaces import WorkspaceService
from pydantic import BaseModel, EmailStr

router = APIRouter()

class ProfileUpdate(BaseModel):
    name: str | None = None

class ProvisionRequest(BaseModel):
    user_id: str
    email: EmailStr
    name: str | None = None
    plan: str | None = None

@router.get("/me")
async def get_my_profile(actor: Actor = Depends(get_current_actor), db: AsyncSession = Depends(get_db)):
    """Get current user profile"""
    user = await db.get(User, actor.user_id)
    if user is None:
        raise NotFound("User not found")
    workspace = await WorkspaceService(db).get_workspace_for_user(actor.user_id)
    return success({
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "plan": user.plan,
        "email_verified": actor.email_verified,
        "workspace": {
            "id": str(workspace.id),
            "name": workspace.name,
            "storage_used_bytes": workspace.storage_used_bytes,
            "storage_limit_bytes": workspace.storage_limit_bytes,
        },
    })

@router.patch("/me")
async def update_my_profile(
    data: ProfileUpdate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    user = await db.get(User, actor.user_id)
    if user is None:
        raise NotFound("User not found")
    if data.name is not None:
        user.name = data.name.strip() or user.name
    await db.commit()
    return success({"id": user.id, "email": user.email, "name": user.name, "plan": user.plan})

@router.get("/storage")
async def get_storage_info(actor: Actor = Depends(get_current_actor), db: AsyncSession = Depends(get_db)):
    """Get storage usage information"""
    return success(await WorkspaceService(db).storage_summary(actor.user_id))

@router.delete("/me")
async def delete_my_account(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    storage: StorageGateway = Depends(get_storage),
):
    """Remove every stored object, then the account and its workspace"""
    return success(await WorkspaceService(db).delete_account(actor.user_id, storage))

@router.post("/provision", status_code=201)
async def provision_user(
    data: ProvisionRequest,
    x_webhook_secret: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    """Identity provider signup webhook"""
    secret = settings.PROVISIONING_WEBHOOK_SECRET
    if not secret or not hmac.compare_digest(secret, x_webhook_secret or ""):
        raise Unauthorized("Invalid webhook secret")
    workspace = await WorkspaceService(db).provision_user(data.user_id, data.email, data.name, data.plan)
    return success({
        "user_id": data.user_id,
        "workspace_id": str(workspace.id),
        "storage_limit_bytes": workspace.storage_limit_bytes,
    }, status_code=201)
