from datetime import datetime
import uuid
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
from foldly.db.session import get_db
from foldly.api.v1.auth import get_current_actor, get_storage
from foldly.common.response import success
from foldly.common.serializers import file_out, folder_out, link_out
from foldly.core.actor import Actor
from foldly.services.files import FileService
from foldly.services.folders import FolderService, get_workspace_for_actor
from foldly.services.hierarchy import FolderTree
from foldly.services.links import LinkService
from foldly.services.permissions import Action, PermissionEngine
from foldly.services.storage import StorageGateway

router = APIRouter()

class FolderCreate(BaseModel):
    name: str = Field(..., max_length=255)
    parent_folder_id: uuid.UUID | None = None
    link_password: str | None = None

class FolderRename(BaseModel):
    name: str = Field(..., max_length=255)

class FolderMove(BaseModel):
    parent_folder_id: uuid.UUID | None = None

class LinkCreate(BaseModel):
    link_type: str = "public"
    title: str | None = None
    expires_at: datetime | None = None
    reuse_link_id: uuid.UUID | None = None
    password: str | None = None
    max_files: int | None = None
    max_file_size_bytes: int | None = None

async def _authorize_read(db: AsyncSession, actor: Actor, service: FolderService, folder_id: uuid.UUID):
    folder, workspace, tree = await service.load(folder_id)
    await PermissionEngine(db).authorize(actor, Action.READ, workspace, tree, folder.id,
                                         owned_by=folder.created_by_email)
    return folder, tree

@router.get("/")
async def list_folders(
    parent_id: uuid.UUID | None = None,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    storage: StorageGateway = Depends(get_storage),
):
    """Children of parent_id in the caller's workspace (roots when omitted)"""
    service = FolderService(db, storage)
    if parent_id is not None:
        folder, _ = await _authorize_read(db, actor, service, parent_id)
        folders = await service.list_children(folder.workspace_id, parent_id)
    else:
        workspace = await get_workspace_for_actor(db, actor)
        folders = await service.list_root_folders(workspace.id)
    return success([folder_out(f) for f in folders])

@router.post("/", status_code=201)
async def create_folder(
    data: FolderCreate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    storage: StorageGateway = Depends(get_storage),
):
    folder = await FolderService(db, storage).create_folder(
        actor, data.name, data.parent_folder_id, link_password=data.link_password
    )
    return success(folder_out(folder), status_code=201)

@router.get("/{folder_id}")
async def get_folder(
    folder_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    storage: StorageGateway = Depends(get_storage),
):
    """Folder with breadcrumb, direct subfolders and files"""
    service = FolderService(db, storage)
    folder, tree = await _authorize_read(db, actor, service, folder_id)
    children = await service.list_children(folder.workspace_id, folder.id)
    files = await FileService(db, storage).list_files(folder.workspace_id, folder.id)
    return success({
        **folder_out(folder),
        "depth": tree.depth(folder.id),
        "breadcrumb": [{"id": str(f.id), "name": f.name} for f in tree.breadcrumb(folder.id)],
        "folders": [folder_out(f) for f in children],
        "files": [file_out(f) for f in files],
    })

@router.get("/{folder_id}/subtree")
async def get_subtree(
    folder_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    storage: StorageGateway = Depends(get_storage),
):
    service = FolderService(db, storage)
    _, tree = await _authorize_read(db, actor, service, folder_id)
    subtree = tree.descendants(folder_id)
    return success({"height": tree.height(folder_id), "folders": [folder_out(f) for f in subtree]})

@router.get("/{folder_id}/ancestors")
async def get_ancestors(
    folder_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    storage: StorageGateway = Depends(get_storage),
):
    service = FolderService(db, storage)
    _, tree = await _authorize_read(db, actor, service, folder_id)
    return success([folder_out(f) for f in tree.breadcrumb(folder_id)])

@router.patch("/{folder_id}")
async def rename_folder(
    folder_id: uuid.UUID,
    data: FolderRename,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    storage: StorageGateway = Depends(get_storage),
):
    folder = await FolderService(db, storage).rename_folder(actor, folder_id, data.name)
    return success(folder_out(folder))

@router.post("/{folder_id}/move")
async def move_folder(
    folder_id: uuid.UUID,
    data: FolderMove,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    storage: StorageGateway = Depends(get_storage),
):
    folder = await FolderService(db, storage).move_folder(actor, folder_id, data.parent_folder_id)
    return success(folder_out(folder))

@router.delete("/{folder_id}")
async def delete_folder(
    folder_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    storage: StorageGateway = Depends(get_storage),
):
    """Cascade delete: subfolders, files (storage first) and link deactivation"""
    report = await FolderService(db, storage).delete_folder(actor, folder_id)
    return success(report.as_dict())

@router.post("/{folder_id}/link", status_code=201)
async def generate_link(
    folder_id: uuid.UUID,
    data: LinkCreate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Share a folder: bind a new (or reactivated) link to it"""
    link = await LinkService(db).generate_link(
        actor, folder_id, data.link_type, data.title, data.expires_at, data.reuse_link_id,
        password=data.password, max_files=data.max_files, max_file_size_bytes=data.max_file_size_bytes,
    )
    return success(link_out(link), status_code=201)

@router.delete("/{folder_id}/link")
async def unlink_folder(
    folder_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    link = await LinkService(db).unlink_folder(actor, folder_id)
    return success(link_out(link) if link else None)
