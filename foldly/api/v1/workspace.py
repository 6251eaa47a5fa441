import uuid
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from foldly.db.session import get_db
from foldly.api.v1.auth import get_current_actor
from foldly.common.response import success
from foldly.common.serializers import file_out
from foldly.core.actor import Actor
from foldly.core.errors import NotFound
from foldly.services.attribution import AttributionIndex
from foldly.services.folders import get_workspace_for_actor
from foldly.services.hierarchy import FolderTree
from foldly.services.quota import QuotaAccountant

router = APIRouter()

async def _folder_in_workspace(db: AsyncSession, workspace_id: uuid.UUID, folder_id: uuid.UUID | None):
    if folder_id is None:
        return
    tree = await FolderTree.load(db, workspace_id)
    if folder_id not in tree:
        raise NotFound("Folder not found", {"folder_id": str(folder_id)})

@router.get("/storage")
async def storage_summary(actor: Actor = Depends(get_current_actor), db: AsyncSession = Depends(get_db)):
    workspace = await get_workspace_for_actor(db, actor)
    return success(await QuotaAccountant(db).usage_summary(workspace.id))

@router.post("/storage/reconcile")
async def reconcile_storage(actor: Actor = Depends(get_current_actor), db: AsyncSession = Depends(get_db)):
    """Recompute the usage counter from file rows"""
    workspace = await get_workspace_for_actor(db, actor)
    previous, actual = await QuotaAccountant(db).reconcile(workspace.id)
    return success({"previous_bytes": previous, "actual_bytes": actual, "drift_bytes": actual - previous})

@router.get("/folder-counts")
async def folder_counts(actor: Actor = Depends(get_current_actor), db: AsyncSession = Depends(get_db)):
    """File, subfolder and uploader counts per folder; key "root" is the workspace root"""
    workspace = await get_workspace_for_actor(db, actor)
    counts = await AttributionIndex(db).folder_counts(workspace.id)
    return success({
        (str(folder_id) if folder_id else "root"): entry.as_dict()
        for folder_id, entry in counts.items()
    })

@router.get("/uploaders")
async def workspace_uploaders(actor: Actor = Depends(get_current_actor), db: AsyncSession = Depends(get_db)):
    workspace = await get_workspace_for_actor(db, actor)
    return success(await AttributionIndex(db).workspace_uploaders(workspace.id))

@router.get("/uploaders/{email}/files")
async def files_by_uploader(
    email: str,
    folder_id: uuid.UUID | None = None,
    include_subfolders: bool = False,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Everything one email uploaded, across the workspace or under one folder"""
    workspace = await get_workspace_for_actor(db, actor)
    await _folder_in_workspace(db, workspace.id, folder_id)
    files = await AttributionIndex(db).files_by_email(workspace.id, email, folder_id, include_subfolders)
    return success([file_out(f) for f in files])

@router.get("/folders/{folder_id}/uploaders")
async def folder_uploaders(
    folder_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    workspace = await get_workspace_for_actor(db, actor)
    await _folder_in_workspace(db, workspace.id, folder_id)
    return success(await AttributionIndex(db).unique_uploaders(folder_id))
