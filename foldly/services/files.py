"""File uploads and file-level mutations.

Uploads reserve quota before touching storage and only create the File row
once the bytes are stored. Deletes go the other way: storage first, then the
row, then the quota counter.
"""
from dataclasses import dataclass, field
import logging
import mimetypes
import uuid
from typing import Optional
from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from foldly.core.actor import Actor
from foldly.core.errors import (
    FileTooLarge,
    FoldlyError,
    InvalidInput,
    NotFound,
    QuotaExceeded,
    StorageUnavailable,
    Unauthorized,
)
from foldly.core.monitoring import log_rejection
from foldly.models.file import File
from foldly.models.folder import Folder
from foldly.models.link import Link
from foldly.models.user import User
from foldly.models.workspace import Workspace
from foldly.services.folders import clean_name, get_workspace, get_workspace_for_actor
from foldly.services.hierarchy import FolderTree, resolve_unique_name
from foldly.services.links import LinkService, link_for_folder
from foldly.services.permissions import Action, PermissionEngine, Role
from foldly.services.quota import QuotaAccountant, QuotaCheck, max_file_bytes
from foldly.services.storage import StorageGateway

logger = logging.getLogger(__name__)


@dataclass
class UploadResult:
    file: File
    quota: QuotaCheck


@dataclass
class BulkDeleteReport:
    deleted: list = field(default_factory=list)
    failed: list = field(default_factory=list)
    freed_bytes: int = 0

    def as_dict(self) -> dict:
        return {
            "deleted": [str(i) for i in self.deleted],
            "failed": self.failed,
            "freed_bytes": self.freed_bytes,
        }


class FileService:
    def __init__(self, db: AsyncSession, storage: StorageGateway,
                 permissions: Optional[PermissionEngine] = None,
                 quota: Optional[QuotaAccountant] = None):
        self.db = db
        self.storage = storage
        self.permissions = permissions or PermissionEngine(db)
        self.quota = quota or QuotaAccountant(db)

    async def get_file(self, file_id: uuid.UUID) -> File:
        file = await self.db.get(File, file_id)
        if file is None:
            raise NotFound("File not found", {"file_id": str(file_id)})
        return file

    async def _taken_names(self, workspace_id: uuid.UUID, folder_id: Optional[uuid.UUID],
                           exclude_id: Optional[uuid.UUID] = None) -> set[str]:
        query = select(File.filename).where(File.workspace_id == workspace_id)
        if folder_id is None:
            query = query.where(File.folder_id.is_(None))
        else:
            query = query.where(File.folder_id == folder_id)
        if exclude_id is not None:
            query = query.where(File.id != exclude_id)
        result = await self.db.execute(query)
        return {name.lower() for name in result.scalars().all()}

    async def _resolve_target(self, actor: Actor, folder_id: Optional[uuid.UUID],
                              link_slug: Optional[str]) -> tuple[Workspace, FolderTree, Optional[uuid.UUID], Optional[Link]]:
        if link_slug:
            link, workspace, tree, target = await LinkService(self.db).upload_target(actor, link_slug, folder_id)
            return workspace, tree, target, link

        if folder_id is not None:
            folder = await self.db.get(Folder, folder_id)
            if folder is None:
                raise NotFound("Folder not found", {"folder_id": str(folder_id)})
            workspace = await get_workspace(self.db, folder.workspace_id)
        else:
            workspace = await get_workspace_for_actor(self.db, actor)
        tree = await FolderTree.load(self.db, workspace.id)
        return workspace, tree, folder_id, None

    async def upload_file(self, actor: Actor, data: bytes, filename: str,
                          content_type: Optional[str] = None, folder_id: Optional[uuid.UUID] = None,
                          link_slug: Optional[str] = None, uploader_name: Optional[str] = None,
                          link_password: Optional[str] = None) -> UploadResult:
        filename = clean_name(filename)
        workspace, tree, target_id, via_link = await self._resolve_target(actor, folder_id, link_slug)
        access = await self.permissions.authorize(actor, Action.UPLOAD, workspace, tree, target_id,
                                                  link_password=link_password)
        if via_link is not None and access.role != Role.OWNER and access.link.id != via_link.id:
            raise Unauthorized("Uploads must go through the link that shares the target folder")

        size = len(data)
        owner = await self.db.get(User, workspace.user_id)
        limit = max_file_bytes(owner.plan if owner else None)
        if size > limit:
            log_rejection(logger, "upload_file", actor.describe(), "file too large",
                          size_bytes=size, limit_bytes=limit)
            raise FileTooLarge("File exceeds the maximum size for this plan",
                               {"size_bytes": size, "limit_bytes": limit})
        if access.link is not None and access.link.max_file_size_bytes is not None \
                and size > access.link.max_file_size_bytes:
            log_rejection(logger, "upload_file", actor.describe(), "file too large for link",
                          size_bytes=size, limit_bytes=access.link.max_file_size_bytes)
            raise FileTooLarge("File exceeds the maximum size for this link",
                               {"size_bytes": size, "limit_bytes": access.link.max_file_size_bytes})

        check = await self.quota.reserve(workspace.id, size)

        link_id = access.link.id if access.link is not None else link_for_folder(tree, target_id)
        if link_id is not None:
            try:
                # Owners fill their own folders past the link's file cap
                await self.quota.reserve_link_slot(link_id, size, enforce_cap=access.role != Role.OWNER)
            except QuotaExceeded:
                await self.db.rollback()
                raise
        file_id = uuid.uuid4()
        content_type = content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
        storage_key = self.storage.generate_storage_key(
            workspace.user_id, str(link_id or target_id or "root"), str(file_id), filename
        )

        try:
            self.storage.put(storage_key, data, content_type)
        except StorageUnavailable:
            await self.db.rollback()
            logger.error(f"Upload aborted for {actor.describe()}: storage put failed for {storage_key}")
            raise

        try:
            file = File(
                id=file_id,
                workspace_id=workspace.id,
                folder_id=target_id,
                link_id=link_id,
                filename=resolve_unique_name(filename, await self._taken_names(workspace.id, target_id),
                                             keep_extension=True),
                original_filename=filename,
                size_bytes=size,
                mime_type=content_type,
                storage_key=storage_key,
                uploader_email=actor.email,
                uploader_name=uploader_name,
            )
            self.db.add(file)
            if access.link is not None and access.link.link_type == "public" and access.permission is None:
                await self.permissions.ensure_uploader(access.link, actor.email)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            try:
                self.storage.delete(storage_key)
            except StorageUnavailable:
                logger.error(f"Orphaned storage object after failed upload commit: {storage_key}")
            raise

        logger.info(
            f"File {file.id} '{file.filename}' ({size} bytes) uploaded by {actor.describe()} "
            f"to folder {target_id} in workspace {workspace.id}"
        )
        return UploadResult(file, check)

    async def load(self, file_id: uuid.UUID) -> tuple[File, Workspace, FolderTree]:
        file = await self.get_file(file_id)
        workspace = await get_workspace(self.db, file.workspace_id)
        tree = await FolderTree.load(self.db, workspace.id)
        return file, workspace, tree

    async def move_file(self, actor: Actor, file_id: uuid.UUID, new_folder_id: Optional[uuid.UUID]) -> File:
        file, workspace, tree = await self.load(file_id)
        source = await self.permissions.authorize(
            actor, Action.MOVE, workspace, tree, file.folder_id, owned_by=file.uploader_email
        )
        if new_folder_id == file.folder_id:
            return file
        if new_folder_id is not None and new_folder_id not in tree:
            raise NotFound("Destination folder not found", {"folder_id": str(new_folder_id)})

        if source.role != Role.OWNER:
            if new_folder_id is None:
                raise Unauthorized("Only the owner can move files to the workspace root")
            dest = await self.permissions.authorize(actor, Action.UPLOAD, workspace, tree, new_folder_id,
                                                   new_content=False)
            if dest.link_folder_id != source.link_folder_id:
                raise Unauthorized("Files cannot be moved outside the shared folder")

        old_folder = file.folder_id
        file.filename = resolve_unique_name(
            file.filename, await self._taken_names(workspace.id, new_folder_id, exclude_id=file.id),
            keep_extension=True,
        )
        file.folder_id = new_folder_id
        await self.db.commit()
        logger.info(f"File {file.id} moved from {old_folder} to {new_folder_id} by {actor.describe()}")
        return file

    async def rename_file(self, actor: Actor, file_id: uuid.UUID, name: str) -> File:
        name = clean_name(name)
        file, workspace, tree = await self.load(file_id)
        await self.permissions.authorize(
            actor, Action.RENAME, workspace, tree, file.folder_id, owned_by=file.uploader_email
        )
        if name == file.filename:
            return file
        file.filename = resolve_unique_name(
            name, await self._taken_names(workspace.id, file.folder_id, exclude_id=file.id), keep_extension=True
        )
        await self.db.commit()
        logger.info(f"File {file.id} renamed to '{file.filename}' by {actor.describe()}")
        return file

    async def delete_file(self, actor: Actor, file_id: uuid.UUID) -> int:
        """Storage first, then the row, then the counter. Returns freed bytes."""
        file, workspace, tree = await self.load(file_id)
        await self.permissions.authorize(
            actor, Action.DELETE, workspace, tree, file.folder_id, owned_by=file.uploader_email
        )
        self.storage.delete(file.storage_key)
        size = file.size_bytes
        await self.quota.release_link_usage([file])
        await self.db.delete(file)
        await self.quota.apply_delta(workspace.id, -size)
        await self.db.commit()
        logger.info(f"File {file_id} ({size} bytes) deleted by {actor.describe()}")
        return size

    async def bulk_delete(self, actor: Actor, file_ids: list[uuid.UUID]) -> BulkDeleteReport:
        """Best effort. Rows survive for every item that failed."""
        report = BulkDeleteReport()
        removed: list[File] = []
        freed: dict[uuid.UUID, int] = {}
        trees: dict[uuid.UUID, tuple[Workspace, FolderTree]] = {}

        for file_id in dict.fromkeys(file_ids):
            try:
                file = await self.get_file(file_id)
                if file.workspace_id not in trees:
                    workspace = await get_workspace(self.db, file.workspace_id)
                    trees[file.workspace_id] = (workspace, await FolderTree.load(self.db, workspace.id))
                workspace, tree = trees[file.workspace_id]
                await self.permissions.authorize(
                    actor, Action.DELETE, workspace, tree, file.folder_id, owned_by=file.uploader_email
                )
                self.storage.delete(file.storage_key)
            except FoldlyError as e:
                report.failed.append({"file_id": str(file_id), "error": e.kind.value, "message": e.message})
                continue
            report.deleted.append(file.id)
            removed.append(file)
            freed[file.workspace_id] = freed.get(file.workspace_id, 0) + file.size_bytes

        if report.deleted:
            await self.quota.release_link_usage(removed)
            await self.db.execute(
                delete(File).where(File.id.in_(report.deleted)).execution_options(synchronize_session=False)
            )
            for file in removed:
                self.db.expunge(file)
            for workspace_id, nbytes in freed.items():
                await self.quota.apply_delta(workspace_id, -nbytes)
            await self.db.commit()
        report.freed_bytes = sum(freed.values())

        logger.info(
            f"Bulk delete by {actor.describe()}: {len(report.deleted)} deleted, {len(report.failed)} failed"
        )
        return report

    async def signed_url(self, actor: Actor, file_id: uuid.UUID, ttl: Optional[int] = None) -> str:
        file, workspace, tree = await self.load(file_id)
        await self.permissions.authorize(
            actor, Action.READ, workspace, tree, file.folder_id, owned_by=file.uploader_email
        )
        return self.storage.signed_url(file.storage_key, ttl, file.filename)

    async def list_files(self, workspace_id: uuid.UUID, folder_id: Optional[uuid.UUID] = None) -> list[File]:
        query = select(File).where(File.workspace_id == workspace_id)
        if folder_id is None:
            query = query.where(File.folder_id.is_(None))
        else:
            query = query.where(File.folder_id == folder_id)
        result = await self.db.execute(query.order_by(File.uploaded_at.desc()))
        return list(result.scalars().all())

    async def search_files(self, workspace_id: uuid.UUID, q: str, limit: int = 50) -> list[File]:
        q = (q or "").strip()
        if not q:
            raise InvalidInput("Search query cannot be empty")
        pattern = f"%{q.lower()}%"
        result = await self.db.execute(
            select(File)
            .where(
                File.workspace_id == workspace_id,
                or_(
                    func.lower(File.filename).like(pattern),
                    func.lower(File.uploader_email).like(pattern),
                    func.lower(File.uploader_name).like(pattern),
                ),
            )
            .order_by(File.uploaded_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
