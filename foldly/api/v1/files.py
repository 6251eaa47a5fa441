from fastapi import APIRouter, Depends, UploadFile, File as FastAPIFile, Form
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import List
import uuid
from foldly.db.session import get_db
from foldly.models.file import File
from foldly.api.v1.auth import get_current_actor, get_storage
from foldly.common.response import success
from foldly.common.serializers import file_out
from foldly.config import settings
from foldly.core.actor import Actor
from foldly.core.errors import NotFound, Unauthorized
from foldly.services.files import FileService
from foldly.services.folders import FolderService, get_workspace_for_actor
from foldly.services.permissions import Action, PermissionEngine
from foldly.services.storage import LocalStorageService, StorageGateway
from pydantic import BaseModel, Field

router = APIRouter()

class FileRename(BaseModel):
    filename: str = Field(..., max_length=500)

class FileMove(BaseModel):
    folder_id: uuid.UUID | None = None

class BulkDelete(BaseModel):
    file_ids: List[uuid.UUID] = Field(..., min_length=1, max_length=500)

@router.get("/")
async def list_files(
    folder_id: uuid.UUID | None = None,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    storage: StorageGateway = Depends(get_storage),
):
    """Files directly in folder_id (workspace root when omitted)"""
    if folder_id is not None:
        folder, workspace, tree = await FolderService(db, storage).load(folder_id)
        await PermissionEngine(db).authorize(actor, Action.READ, workspace, tree, folder.id,
                                             owned_by=folder.created_by_email)
    else:
        workspace = await get_workspace_for_actor(db, actor)
    files = await FileService(db, storage).list_files(workspace.id, folder_id)
    return success([file_out(f) for f in files])

@router.get("/search")
async def search_files(
    q: str,
    limit: int = 50,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    storage: StorageGateway = Depends(get_storage),
):
    """Search the caller's workspace by filename, uploader email or name"""
    workspace = await get_workspace_for_actor(db, actor)
    files = await FileService(db, storage).search_files(workspace.id, q, min(max(limit, 1), 200))
    return success([file_out(f) for f in files])

@router.post("/upload", status_code=201)
async def upload_file(
    file: UploadFile = FastAPIFile(...),
    folder_id: uuid.UUID | None = Form(None),
    link_password: str | None = Form(None),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    storage: StorageGateway = Depends(get_storage),
):
    """Upload into the caller's workspace or a folder shared with them"""
    data = await file.read()
    result = await FileService(db, storage).upload_file(
        actor, data, file.filename, file.content_type, folder_id=folder_id, link_password=link_password
    )
    return success({**file_out(result.file), "quota": result.quota.as_dict()}, status_code=201)

@router.get("/download/proxy")
async def download_proxy(
    key: str,
    expires: int,
    sig: str,
    db: AsyncSession = Depends(get_db),
    storage: StorageGateway = Depends(get_storage),
):
    """Signed download for the local storage backend"""
    if not isinstance(storage, LocalStorageService) or not storage.verify_signature(key, expires, sig):
        raise Unauthorized("Invalid or expired download link")

    result = await db.execute(select(File).where(File.storage_key == key))
    file = result.scalar_one_or_none()
    if file is None:
        raise NotFound("File not found")

    return Response(
        content=storage.get(key),
        media_type=file.mime_type,
        headers={"Content-Disposition": f'attachment; filename="{file.filename}"'},
    )

@router.get("/{file_id}")
async def get_file(
    file_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    storage: StorageGateway = Depends(get_storage),
):
    service = FileService(db, storage)
    file = await service.get_file(file_id)
    download_url = await service.signed_url(actor, file_id)
    return success({**file_out(file), "download_url": download_url})

@router.get("/{file_id}/download")
async def get_download_url(
    file_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    storage: StorageGateway = Depends(get_storage),
):
    download_url = await FileService(db, storage).signed_url(actor, file_id)
    return success({
        "download_url": download_url,
        "expires_in": settings.S3_PRESIGNED_URL_EXPIRY,
    })

@router.patch("/{file_id}")
async def rename_file(
    file_id: uuid.UUID,
    data: FileRename,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    storage: StorageGateway = Depends(get_storage),
):
    file = await FileService(db, storage).rename_file(actor, file_id, data.filename)
    return success(file_out(file))

@router.post("/{file_id}/move")
async def move_file(
    file_id: uuid.UUID,
    data: FileMove,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    storage: StorageGateway = Depends(get_storage),
):
    file = await FileService(db, storage).move_file(actor, file_id, data.folder_id)
    return success(file_out(file))

@router.delete("/{file_id}")
async def delete_file(
    file_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    storage: StorageGateway = Depends(get_storage),
):
    freed = await FileService(db, storage).delete_file(actor, file_id)
    return success({"id": str(file_id), "freed_bytes": freed})

@router.post("/bulk-delete")
async def bulk_delete(
    data: BulkDelete,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    storage: StorageGateway = Depends(get_storage),
):
    """Best effort: failed items are reported and left in place"""
    report = await FileService(db, storage).bulk_delete(actor, data.file_ids)
    return success(report.as_dict())
