import uuid
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, EmailStr, Field
from foldly.db.session import get_db
from foldly.api.v1.auth import get_current_actor, get_otp_sender
from foldly.common.response import success
from foldly.common.serializers import permission_out
from foldly.core.actor import Actor
from foldly.services.permissions import OtpSender, PermissionEngine, Role

router = APIRouter()

class PermissionAdd(BaseModel):
    email: EmailStr
    role: Role = Role.UPLOADER

class VerifyCode(BaseModel):
    code: str = Field(..., min_length=6, max_length=6)

def get_engine(
    db: AsyncSession = Depends(get_db),
    otp_sender: OtpSender = Depends(get_otp_sender),
) -> PermissionEngine:
    return PermissionEngine(db, otp_sender)

@router.get("/")
async def list_permissions(
    link_id: uuid.UUID,
    include_removed: bool = False,
    actor: Actor = Depends(get_current_actor),
    engine: PermissionEngine = Depends(get_engine),
):
    permissions = await engine.list_permissions(actor, link_id, include_removed)
    return success([permission_out(p) for p in permissions])

@router.post("/", status_code=201)
async def add_permission(
    link_id: uuid.UUID,
    data: PermissionAdd,
    actor: Actor = Depends(get_current_actor),
    engine: PermissionEngine = Depends(get_engine),
):
    """Add an email to the allow-list; role=editor starts an OTP promotion"""
    permission = await engine.add_permission(actor, link_id, data.email, data.role)
    return success(permission_out(permission), status_code=201)

@router.delete("/{email}")
async def remove_permission(
    link_id: uuid.UUID,
    email: str,
    actor: Actor = Depends(get_current_actor),
    engine: PermissionEngine = Depends(get_engine),
):
    """Block future uploads from email; files it already uploaded stay"""
    permission = await engine.remove_permission(actor, link_id, email)
    return success(permission_out(permission))

@router.post("/{email}/promote")
async def request_editor_promotion(
    link_id: uuid.UUID,
    email: str,
    actor: Actor = Depends(get_current_actor),
    engine: PermissionEngine = Depends(get_engine),
):
    permission = await engine.request_editor_promotion(actor, link_id, email)
    return success(permission_out(permission))

@router.post("/{email}/verify")
async def verify_editor_promotion(
    link_id: uuid.UUID,
    email: str,
    data: VerifyCode,
    engine: PermissionEngine = Depends(get_engine),
):
    """Complete a promotion. The code itself proves control of the email."""
    permission = await engine.verify_editor_promotion(link_id, email, data.code)
    return success(permission_out(permission))

@router.post("/{email}/demote")
async def demote_editor(
    link_id: uuid.UUID,
    email: str,
    actor: Actor = Depends(get_current_actor),
    engine: PermissionEngine = Depends(get_engine),
):
    permission = await engine.demote_editor(actor, link_id, email)
    return success(permission_out(permission))
