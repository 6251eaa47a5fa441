"""Public upload surface reached through a link slug. Anonymous callers allowed."""
import uuid
from fastapi import APIRouter, Depends, UploadFile, File as FastAPIFile, Form
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, EmailStr, Field
from foldly.db.session import get_db
from foldly.api.v1.auth import get_optional_actor, get_storage
from foldly.common.response import success
from foldly.common.serializers import file_out, folder_out
from foldly.core.actor import Actor
from foldly.services.files import FileService
from foldly.services.folders import FolderService
from foldly.services.links import LinkService
from foldly.services.permissions import is_link_live
from foldly.services.storage import StorageGateway

router = APIRouter()

class PublicFolderCreate(BaseModel):
    name: str = Field(..., max_length=255)
    parent_folder_id: uuid.UUID | None = None
    email: EmailStr | None = None
    password: str | None = None

def _claimed(actor: Actor, email: str | None) -> Actor:
    # A signed-in caller keeps their verified identity
    if actor.is_anonymous and email:
        return Actor.anonymous(email)
    return actor

@router.get("/{slug}")
async def get_link_info(slug: str, db: AsyncSession = Depends(get_db)):
    """What an uploader sees before sending files"""
    link = await LinkService(db).resolve_slug(slug)
    return success({
        "slug": link.slug,
        "title": link.title,
        "link_type": link.link_type,
        "accepting_uploads": is_link_live(link) and link.folder_id is not None,
        "requires_allow_listed_email": link.link_type == "dedicated",
        "requires_password": link.require_password,
        "max_file_size_bytes": link.max_file_size_bytes,
        "remaining_files": max(link.max_files - link.total_files, 0) if link.max_files is not None else None,
        "expires_at": link.expires_at,
    })

@router.post("/{slug}/files", status_code=201)
async def upload_via_link(
    slug: str,
    file: UploadFile = FastAPIFile(...),
    folder_id: uuid.UUID | None = Form(None),
    email: EmailStr | None = Form(None),
    name: str | None = Form(None),
    password: str | None = Form(None),
    actor: Actor = Depends(get_optional_actor),
    db: AsyncSession = Depends(get_db),
    storage: StorageGateway = Depends(get_storage),
):
    data = await file.read()
    result = await FileService(db, storage).upload_file(
        _claimed(actor, email), data, file.filename, file.content_type,
        folder_id=folder_id, link_slug=slug, uploader_name=name, link_password=password,
    )
    return success(file_out(result.file), status_code=201)

@router.post("/{slug}/folders", status_code=201)
async def create_folder_via_link(
    slug: str,
    data: PublicFolderCreate,
    actor: Actor = Depends(get_optional_actor),
    db: AsyncSession = Depends(get_db),
    storage: StorageGateway = Depends(get_storage),
):
    actor = _claimed(actor, data.email)
    _, _, _, parent_id = await LinkService(db).upload_target(actor, slug, data.parent_folder_id)
    folder = await FolderService(db, storage).create_folder(actor, data.name, parent_id, link_password=data.password)
    return success(folder_out(folder), status_code=201)
