"""Folder hierarchy mutations: create, rename, move, cascade delete."""
from dataclasses import dataclass, field
import logging
import uuid
from typing import Optional
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from foldly.config import settings
from foldly.core.actor import Actor
from foldly.core.errors import (
    CircularReference,
    DepthLimitExceeded,
    InvalidInput,
    NotFound,
    StorageUnavailable,
    Unauthorized,
)
from foldly.core.monitoring import log_rejection
from foldly.models.file import File
from foldly.models.folder import Folder
from foldly.models.link import Link
from foldly.models.workspace import Workspace
from foldly.services.hierarchy import FolderTree, resolve_unique_name
from foldly.services.permissions import Action, PermissionEngine, Role
from foldly.services.quota import QuotaAccountant
from foldly.services.storage import StorageGateway

logger = logging.getLogger(__name__)


def clean_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not name:
        raise InvalidInput("Name cannot be empty")
    if len(name) > settings.MAX_FOLDER_NAME_LENGTH:
        raise InvalidInput(f"Name cannot exceed {settings.MAX_FOLDER_NAME_LENGTH} characters")
    if "/" in name or "\\" in name:
        raise InvalidInput("Name cannot contain slashes")
    return name


@dataclass
class CascadeReport:
    folder_ids: list = field(default_factory=list)
    file_ids: list = field(default_factory=list)
    freed_bytes: int = 0
    deactivated_link_ids: list = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "deleted_folder_ids": [str(i) for i in self.folder_ids],
            "deleted_file_ids": [str(i) for i in self.file_ids],
            "freed_bytes": self.freed_bytes,
            "deactivated_link_ids": [str(i) for i in self.deactivated_link_ids],
        }


async def get_workspace(db: AsyncSession, workspace_id: uuid.UUID) -> Workspace:
    workspace = await db.get(Workspace, workspace_id)
    if workspace is None:
        raise NotFound("Workspace not found", {"workspace_id": str(workspace_id)})
    return workspace


async def get_workspace_for_actor(db: AsyncSession, actor: Actor) -> Workspace:
    if actor.is_anonymous:
        raise Unauthorized("Sign in to access a workspace")
    result = await db.execute(select(Workspace).where(Workspace.user_id == actor.user_id))
    workspace = result.scalar_one_or_none()
    if workspace is None:
        raise NotFound("Workspace not found")
    return workspace


class FolderService:
    def __init__(self, db: AsyncSession, storage: StorageGateway,
                 permissions: Optional[PermissionEngine] = None,
                 quota: Optional[QuotaAccountant] = None):
        self.db = db
        self.storage = storage
        self.permissions = permissions or PermissionEngine(db)
        self.quota = quota or QuotaAccountant(db)

    async def get_folder(self, folder_id: uuid.UUID) -> Folder:
        folder = await self.db.get(Folder, folder_id)
        if folder is None:
            raise NotFound("Folder not found", {"folder_id": str(folder_id)})
        return folder

    async def load(self, folder_id: uuid.UUID) -> tuple[Folder, Workspace, FolderTree]:
        folder = await self.get_folder(folder_id)
        workspace = await get_workspace(self.db, folder.workspace_id)
        tree = await FolderTree.load(self.db, workspace.id)
        return tree.get(folder.id), workspace, tree

    # ------------------------------------------------------------------
    # Reads (owner scoped at the API layer)
    # ------------------------------------------------------------------

    async def get_subtree(self, folder_id: uuid.UUID) -> list[Folder]:
        _, _, tree = await self.load(folder_id)
        return tree.descendants(folder_id)

    async def get_ancestors(self, folder_id: uuid.UUID) -> list[Folder]:
        _, _, tree = await self.load(folder_id)
        return tree.breadcrumb(folder_id)

    async def list_children(self, workspace_id: uuid.UUID, parent_id: Optional[uuid.UUID] = None) -> list[Folder]:
        query = select(Folder).where(Folder.workspace_id == workspace_id)
        if parent_id is None:
            query = query.where(Folder.parent_folder_id.is_(None))
        else:
            query = query.where(Folder.parent_folder_id == parent_id)
        result = await self.db.execute(query.order_by(Folder.name))
        return list(result.scalars().all())

    async def list_root_folders(self, workspace_id: uuid.UUID) -> list[Folder]:
        return await self.list_children(workspace_id, None)

    async def folder_depth(self, folder_id: uuid.UUID) -> int:
        _, _, tree = await self.load(folder_id)
        return tree.depth(folder_id)

    async def subtree_height(self, folder_id: uuid.UUID) -> int:
        _, _, tree = await self.load(folder_id)
        return tree.height(folder_id)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create_folder(self, actor: Actor, name: str, parent_id: Optional[uuid.UUID] = None,
                            workspace_id: Optional[uuid.UUID] = None,
                            link_password: Optional[str] = None) -> Folder:
        name = clean_name(name)
        if parent_id is not None:
            _, workspace, tree = await self.load(parent_id)
        else:
            workspace = (await get_workspace(self.db, workspace_id)) if workspace_id \
                else (await get_workspace_for_actor(self.db, actor))
            tree = await FolderTree.load(self.db, workspace.id)

        await self.permissions.authorize(actor, Action.CREATE_FOLDER, workspace, tree, parent_id,
                                         link_password=link_password)

        if tree.depth(parent_id) + 1 > settings.MAX_FOLDER_DEPTH:
            log_rejection(logger, "create_folder", actor.describe(), "depth limit",
                          parent_id=str(parent_id))
            raise DepthLimitExceeded(
                f"Maximum nesting depth ({settings.MAX_FOLDER_DEPTH} levels) would be exceeded"
            )

        folder = Folder(
            id=uuid.uuid4(),
            workspace_id=workspace.id,
            parent_folder_id=parent_id,
            name=resolve_unique_name(name, tree.sibling_names(parent_id)),
            created_by_email=actor.email,
        )
        self.db.add(folder)
        await self.db.commit()
        logger.info(f"Folder {folder.id} '{folder.name}' created by {actor.describe()} under {parent_id}")
        return folder

    async def rename_folder(self, actor: Actor, folder_id: uuid.UUID, name: str) -> Folder:
        name = clean_name(name)
        folder, workspace, tree = await self.load(folder_id)
        await self.permissions.authorize(
            actor, Action.RENAME, workspace, tree, folder.id,
            owned_by=folder.created_by_email, target_folder=folder,
        )
        if name == folder.name:
            return folder
        folder.name = resolve_unique_name(name, tree.sibling_names(folder.parent_folder_id, exclude_id=folder.id))
        await self.db.commit()
        logger.info(f"Folder {folder.id} renamed to '{folder.name}' by {actor.describe()}")
        return folder

    async def move_folder(self, actor: Actor, folder_id: uuid.UUID, new_parent_id: Optional[uuid.UUID]) -> Folder:
        folder, workspace, tree = await self.load(folder_id)
        source = await self.permissions.authorize(
            actor, Action.MOVE, workspace, tree, folder.id,
            owned_by=folder.created_by_email, target_folder=folder,
        )

        # Already there: no rename, no error
        if new_parent_id == folder.parent_folder_id:
            return folder

        if new_parent_id is not None:
            if new_parent_id == folder.id:
                log_rejection(logger, "move_folder", actor.describe(), "circular reference",
                              folder_id=str(folder_id), new_parent_id=str(new_parent_id))
                raise CircularReference("A folder cannot be moved into itself")
            if new_parent_id not in tree:
                raise NotFound("Destination folder not found", {"folder_id": str(new_parent_id)})
            if any(f.id == folder.id for f in tree.ancestors(new_parent_id)):
                log_rejection(logger, "move_folder", actor.describe(), "circular reference",
                              folder_id=str(folder_id), new_parent_id=str(new_parent_id))
                raise CircularReference("A folder cannot be moved into one of its descendants")

        new_depth = tree.depth(new_parent_id) + tree.height(folder.id)
        if new_depth > settings.MAX_FOLDER_DEPTH:
            log_rejection(logger, "move_folder", actor.describe(), "depth limit",
                          folder_id=str(folder_id), new_depth=new_depth)
            raise DepthLimitExceeded(
                f"Maximum nesting depth ({settings.MAX_FOLDER_DEPTH} levels) would be exceeded",
                {"resulting_depth": new_depth},
            )

        if source.role != Role.OWNER:
            if new_parent_id is None:
                raise Unauthorized("Only the owner can move folders to the workspace root")
            dest = await self.permissions.authorize(actor, Action.CREATE_FOLDER, workspace, tree, new_parent_id,
                                                   new_content=False)
            if dest.link_folder_id != source.link_folder_id:
                raise Unauthorized("Folders cannot be moved outside the shared folder")

        old_parent = folder.parent_folder_id
        folder.name = resolve_unique_name(folder.name, tree.sibling_names(new_parent_id, exclude_id=folder.id))
        tree.reparent(folder, new_parent_id)
        await self.db.commit()
        logger.info(f"Folder {folder.id} moved from {old_parent} to {new_parent_id} by {actor.describe()}")
        return folder

    async def delete_folder(self, actor: Actor, folder_id: uuid.UUID) -> CascadeReport:
        """Delete a folder, its descendants and their files.

        Storage objects go first. If any of them cannot be deleted, rows for
        the objects that are already gone are removed, everything else is left
        in place and StorageUnavailable lists the stragglers for a retry.
        """
        folder, workspace, tree = await self.load(folder_id)
        access = await self.permissions.authorize(
            actor, Action.DELETE, workspace, tree, folder.id,
            owned_by=folder.created_by_email, target_folder=folder,
        )

        subtree = tree.descendants(folder.id)
        folder_ids = [f.id for f in subtree]
        result = await self.db.execute(select(File).where(File.folder_id.in_(folder_ids)))
        files = list(result.scalars().all())

        # Editors manage the whole link subtree; uploaders only what they created
        if access.role not in (Role.OWNER, Role.EDITOR):
            email = actor.verified_email
            foreign = [f for f in subtree if f.created_by_email != email] + \
                      [f for f in files if f.uploader_email != email]
            if foreign:
                log_rejection(logger, "delete_folder", actor.describe(), "subtree holds other uploads",
                              folder_id=str(folder_id))
                raise Unauthorized("The folder contains items you did not upload")

        deleted, failed = [], []
        for file in files:
            try:
                self.storage.delete(file.storage_key)
                deleted.append(file)
            except StorageUnavailable as e:
                failed.append({"file_id": str(file.id), "storage_key": file.storage_key, "error": e.message})

        report = CascadeReport()
        if deleted:
            report.file_ids = [f.id for f in deleted]
            report.freed_bytes = sum(f.size_bytes for f in deleted)
            await self.quota.release_link_usage(deleted)
            await self.db.execute(
                delete(File).where(File.id.in_(report.file_ids)).execution_options(synchronize_session=False)
            )
            for f in deleted:
                self.db.expunge(f)
            await self.quota.apply_delta(workspace.id, -report.freed_bytes)

        if failed:
            await self.db.commit()
            logger.warning(
                f"Folder delete {folder_id} incomplete: {len(failed)} storage deletions failed, "
                f"{len(deleted)} files removed",
                extra={"actor": actor.describe(), "failed": failed},
            )
            raise StorageUnavailable(
                "Some files could not be deleted from storage; retry to finish deleting the folder",
                {"failed": failed, **report.as_dict()},
            )

        link_ids = [f.link_id for f in subtree if f.link_id is not None]
        if link_ids:
            result = await self.db.execute(select(Link).where(Link.id.in_(link_ids)))
            for link in result.scalars().all():
                link.is_active = False
                link.folder_id = None
            report.deactivated_link_ids = link_ids

        # Deepest first so a non-deferred parent FK never blocks the delete
        for f in reversed(subtree):
            await self.db.execute(
                delete(Folder).where(Folder.id == f.id).execution_options(synchronize_session=False)
            )
            self.db.expunge(f)
        report.folder_ids = folder_ids
        await self.db.commit()

        logger.info(
            f"Folder {folder_id} deleted by {actor.describe()}: {len(folder_ids)} folders, "
            f"{len(report.file_ids)} files, {report.freed_bytes} bytes, "
            f"{len(link_ids)} links deactivated"
        )
        return report
