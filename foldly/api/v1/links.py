from datetime import datetime
import uuid
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel
from foldly.db.session import get_db
from foldly.api.v1.auth import get_current_actor
from foldly.common.response import success
from foldly.common.serializers import link_out
from foldly.core.actor import Actor
from foldly.services.links import LinkService

router = APIRouter()

class LinkTypeSwitch(BaseModel):
    link_type: str

class LinkUpdate(BaseModel):
    title: str | None = None
    expires_at: datetime | None = None
    clear_expiry: bool = False
    password: str | None = None
    clear_password: bool = False
    max_files: int | None = None
    max_file_size_bytes: int | None = None
    clear_limits: bool = False

@router.get("/")
async def list_links(
    active_only: bool = False,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Every link the caller owns, including deactivated ones"""
    links = await LinkService(db).list_links(actor, include_inactive=not active_only)
    return success([link_out(link) for link in links])

@router.get("/{link_id}")
async def get_link(
    link_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    link = await LinkService(db).get_owned_link(actor, link_id, "get_link")
    return success(link_out(link))

@router.patch("/{link_id}")
async def update_link(
    link_id: uuid.UUID,
    data: LinkUpdate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    link = await LinkService(db).update_link(
        actor, link_id, data.title, data.expires_at, data.clear_expiry,
        password=data.password, clear_password=data.clear_password,
        max_files=data.max_files, max_file_size_bytes=data.max_file_size_bytes,
        clear_limits=data.clear_limits,
    )
    return success(link_out(link))

@router.post("/{link_id}/type")
async def switch_link_type(
    link_id: uuid.UUID,
    data: LinkTypeSwitch,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Public <-> dedicated; the permission list is preserved both ways"""
    link = await LinkService(db).switch_link_type(actor, link_id, data.link_type)
    return success(link_out(link))
