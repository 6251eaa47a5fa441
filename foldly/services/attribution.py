"""Uploader attribution queries.

Attribution is ``File.uploader_email`` plus ``File.folder_id``; everything
here is aggregated on demand with grouped SQL, so counts always reflect the
last committed mutation. Permission changes never affect these results.
"""
from dataclasses import dataclass
import uuid
from typing import Optional
from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from foldly.core.actor import normalize_email
from foldly.models.file import File
from foldly.models.folder import Folder
from foldly.services.hierarchy import FolderTree


@dataclass
class FolderCounts:
    file_count: int = 0
    folder_count: int = 0
    uploader_count: int = 0
    total_bytes: int = 0

    def as_dict(self) -> dict:
        return {
            "file_count": self.file_count,
            "folder_count": self.folder_count,
            "uploader_count": self.uploader_count,
            "total_bytes": self.total_bytes,
        }


class AttributionIndex:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def files_by_email(self, workspace_id: uuid.UUID, email: str,
                             folder_id: Optional[uuid.UUID] = None,
                             include_subfolders: bool = False) -> list[File]:
        query = select(File).where(
            File.workspace_id == workspace_id,
            File.uploader_email == normalize_email(email),
        )
        if folder_id is not None:
            if include_subfolders:
                tree = await FolderTree.load(self.db, workspace_id)
                query = query.where(File.folder_id.in_([f.id for f in tree.descendants(folder_id)]))
            else:
                query = query.where(File.folder_id == folder_id)
        result = await self.db.execute(query.order_by(File.uploaded_at.desc()))
        return list(result.scalars().all())

    async def unique_uploaders(self, folder_id: uuid.UUID) -> list[str]:
        result = await self.db.execute(
            select(distinct(File.uploader_email))
            .where(File.folder_id == folder_id, File.uploader_email.is_not(None))
            .order_by(File.uploader_email)
        )
        return list(result.scalars().all())

    async def workspace_uploaders(self, workspace_id: uuid.UUID) -> list[dict]:
        result = await self.db.execute(
            select(
                File.uploader_email,
                func.count(File.id).label("file_count"),
                func.coalesce(func.sum(File.size_bytes), 0).label("total_bytes"),
                func.max(File.uploaded_at).label("last_upload_at"),
            )
            .where(File.workspace_id == workspace_id, File.uploader_email.is_not(None))
            .group_by(File.uploader_email)
            .order_by(func.max(File.uploaded_at).desc())
        )
        return [
            {
                "email": row.uploader_email,
                "file_count": row.file_count,
                "total_bytes": int(row.total_bytes),
                "last_upload_at": row.last_upload_at,
            }
            for row in result.all()
        ]

    async def folder_counts(self, workspace_id: uuid.UUID) -> dict[Optional[uuid.UUID], FolderCounts]:
        """Direct children counts per folder; the ``None`` key is the workspace root."""
        counts: dict[Optional[uuid.UUID], FolderCounts] = {None: FolderCounts()}

        folder_rows = await self.db.execute(
            select(Folder.id, Folder.parent_folder_id).where(Folder.workspace_id == workspace_id)
        )
        for folder_id, parent_id in folder_rows.all():
            counts.setdefault(folder_id, FolderCounts())
            counts.setdefault(parent_id, FolderCounts()).folder_count += 1

        file_rows = await self.db.execute(
            select(
                File.folder_id,
                func.count(File.id),
                func.count(distinct(File.uploader_email)),
                func.coalesce(func.sum(File.size_bytes), 0),
            )
            .where(File.workspace_id == workspace_id)
            .group_by(File.folder_id)
        )
        for folder_id, file_count, uploader_count, total_bytes in file_rows.all():
            entry = counts.setdefault(folder_id, FolderCounts())
            entry.file_count = file_count
            entry.uploader_count = uploader_count
            entry.total_bytes = int(total_bytes)
        return counts
