"""Link registry: binding shareable links to folders.

A folder is in shared context while ``Folder.link_id`` points at an active
link. Unlinking or deleting the folder deactivates the link row, which is
kept so it can later be re-bound to the same or a different folder.
"""
from datetime import datetime, timezone
import logging
import uuid
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from foldly.config import settings
from foldly.core.actor import Actor
from foldly.core.errors import AlreadyLinked, InvalidInput, LinkInactive, NotFound, Unauthorized
from foldly.core.monitoring import log_rejection
from foldly.core.security import generate_slug, hash_link_password
from foldly.models.folder import Folder
from foldly.models.link import Link
from foldly.models.workspace import Workspace
from foldly.services.folders import get_workspace
from foldly.services.hierarchy import FolderTree
from foldly.services.permissions import is_link_live

logger = logging.getLogger(__name__)

LINK_TYPES = ("public", "dedicated")


def validate_link_type(link_type: str) -> str:
    link_type = (link_type or "").strip().lower()
    if link_type not in LINK_TYPES:
        raise InvalidInput(f"Link type must be one of: {', '.join(LINK_TYPES)}")
    return link_type


def utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive UTC; aware input is converted."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def check_limit(name: str, value: Optional[int]) -> Optional[int]:
    if value is not None and value < 1:
        raise InvalidInput(f"{name} must be at least 1")
    return value


def link_password_hash(password: str) -> str:
    if len(password) < settings.LINK_PASSWORD_MIN_LENGTH:
        raise InvalidInput(f"Link password must be at least {settings.LINK_PASSWORD_MIN_LENGTH} characters")
    if len(password.encode()) > 72:
        raise InvalidInput("Link password must be at most 72 bytes")
    return hash_link_password(password)


def link_for_folder(tree: FolderTree, folder_id: Optional[uuid.UUID]) -> Optional[uuid.UUID]:
    """Id of the link bound at or above folder_id, if any."""
    linked = tree.nearest_linked(folder_id)
    return linked.link_id if linked else None


class LinkService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_link(self, link_id: uuid.UUID) -> Link:
        link = await self.db.get(Link, link_id)
        if link is None:
            raise NotFound("Link not found", {"link_id": str(link_id)})
        return link

    async def resolve_slug(self, slug: str) -> Link:
        result = await self.db.execute(select(Link).where(Link.slug == slug))
        link = result.scalar_one_or_none()
        if link is None:
            raise NotFound("Link not found", {"slug": slug})
        return link

    async def upload_target(self, actor: Actor, slug: str, folder_id: Optional[uuid.UUID] = None
                            ) -> tuple[Link, Workspace, FolderTree, uuid.UUID]:
        """Resolve a public upload path: the link folder or one of its subfolders."""
        link = await self.resolve_slug(slug)
        if not is_link_live(link) or link.folder_id is None:
            raise LinkInactive("This link is no longer accepting uploads", {"link_id": str(link.id)})
        workspace = await get_workspace(self.db, link.workspace_id)
        tree = await FolderTree.load(self.db, workspace.id)
        target = folder_id or link.folder_id
        if link.folder_id not in tree or target not in tree or not tree.is_within(target, link.folder_id):
            log_rejection(logger, "upload_target", actor.describe(), "target outside link folder",
                          link_id=str(link.id), folder_id=str(target))
            raise Unauthorized("Uploads must target the shared folder or one of its subfolders")
        return link, workspace, tree, target

    async def list_links(self, actor: Actor, include_inactive: bool = True) -> list[Link]:
        if actor.is_anonymous:
            raise Unauthorized("Sign in to list links")
        query = select(Link).where(Link.owner_user_id == actor.user_id)
        if not include_inactive:
            query = query.where(Link.is_active.is_(True))
        result = await self.db.execute(query.order_by(Link.created_at.desc()))
        return list(result.scalars().all())

    async def _owned_folder(self, actor: Actor, folder_id: uuid.UUID, operation: str) -> Folder:
        folder = await self.db.get(Folder, folder_id)
        if folder is None:
            raise NotFound("Folder not found", {"folder_id": str(folder_id)})
        workspace = await get_workspace(self.db, folder.workspace_id)
        if actor.is_anonymous or workspace.user_id != actor.user_id:
            log_rejection(logger, operation, actor.describe(), "not folder owner", folder_id=str(folder_id))
            raise Unauthorized("Only the owner can share or unshare this folder")
        return folder

    async def get_owned_link(self, actor: Actor, link_id: uuid.UUID, operation: str) -> Link:
        link = await self.get_link(link_id)
        if actor.is_anonymous or link.owner_user_id != actor.user_id:
            log_rejection(logger, operation, actor.describe(), "not link owner", link_id=str(link_id))
            raise Unauthorized("Only the link owner can change this link")
        return link

    async def generate_link(self, actor: Actor, folder_id: uuid.UUID, link_type: str = "public",
                            title: Optional[str] = None, expires_at: Optional[datetime] = None,
                            reuse_link_id: Optional[uuid.UUID] = None, password: Optional[str] = None,
                            max_files: Optional[int] = None, max_file_size_bytes: Optional[int] = None) -> Link:
        link_type = validate_link_type(link_type)
        expires_at = utc_naive(expires_at)
        check_limit("max_files", max_files)
        check_limit("max_file_size_bytes", max_file_size_bytes)
        folder = await self._owned_folder(actor, folder_id, "generate_link")
        password_hash = link_password_hash(password) if password else None

        if folder.link_id is not None:
            current = await self.db.get(Link, folder.link_id)
            if current is not None and current.is_active:
                raise AlreadyLinked("Folder already has an active link", {"link_id": str(current.id)})

        if reuse_link_id is not None:
            link = await self.get_owned_link(actor, reuse_link_id, "generate_link")
            if link.is_active:
                raise AlreadyLinked("Link is already bound to a folder", {"link_id": str(link.id)})
            if link.workspace_id != folder.workspace_id:
                raise InvalidInput("Link belongs to a different workspace")
            link.is_active = True
            link.folder_id = folder.id
            link.link_type = link_type
            if title is not None:
                link.title = title
            link.expires_at = expires_at
            if password_hash is not None:
                link.password_hash = password_hash
            if max_files is not None:
                link.max_files = max_files
            if max_file_size_bytes is not None:
                link.max_file_size_bytes = max_file_size_bytes
        else:
            link = Link(
                id=uuid.uuid4(),
                owner_user_id=actor.user_id,
                workspace_id=folder.workspace_id,
                folder_id=folder.id,
                slug=generate_slug(),
                title=title or folder.name,
                link_type=link_type,
                is_active=True,
                expires_at=expires_at,
                password_hash=password_hash,
                max_files=max_files,
                max_file_size_bytes=max_file_size_bytes,
                total_uploads=0,
                total_files=0,
                total_size_bytes=0,
            )
            self.db.add(link)
            await self.db.flush()

        folder.link_id = link.id
        await self.db.commit()
        logger.info(f"Link {link.id} ({link.link_type}) bound to folder {folder.id} by {actor.describe()}")
        return link

    async def unlink_folder(self, actor: Actor, folder_id: uuid.UUID) -> Optional[Link]:
        """Return the folder to personal context. No-op when it is not shared."""
        folder = await self._owned_folder(actor, folder_id, "unlink_folder")
        if folder.link_id is None:
            return None
        link = await self.db.get(Link, folder.link_id)
        folder.link_id = None
        if link is not None:
            link.is_active = False
        await self.db.commit()
        logger.info(f"Folder {folder.id} unlinked from {link.id if link else None} by {actor.describe()}")
        return link

    async def switch_link_type(self, actor: Actor, link_id: uuid.UUID, new_type: str) -> Link:
        """Switch public/dedicated. The permission list is kept either way."""
        new_type = validate_link_type(new_type)
        link = await self.get_owned_link(actor, link_id, "switch_link_type")
        if link.link_type != new_type:
            previous = link.link_type
            link.link_type = new_type
            await self.db.commit()
            logger.info(f"Link {link.id} switched {previous} -> {new_type} by {actor.describe()}")
        return link

    async def update_link(self, actor: Actor, link_id: uuid.UUID, title: Optional[str] = None,
                          expires_at: Optional[datetime] = None, clear_expiry: bool = False,
                          password: Optional[str] = None, clear_password: bool = False,
                          max_files: Optional[int] = None, max_file_size_bytes: Optional[int] = None,
                          clear_limits: bool = False) -> Link:
        """Change link settings. ``None`` leaves a setting as it is; the
        ``clear_*`` flags remove expiry, password or both upload caps."""
        link = await self.get_owned_link(actor, link_id, "update_link")
        check_limit("max_files", max_files)
        check_limit("max_file_size_bytes", max_file_size_bytes)
        if title is not None:
            link.title = title.strip() or link.title
        if clear_expiry:
            link.expires_at = None
        elif expires_at is not None:
            link.expires_at = utc_naive(expires_at)
        if clear_password:
            link.password_hash = None
        elif password:
            link.password_hash = link_password_hash(password)
        if clear_limits:
            link.max_files = None
            link.max_file_size_bytes = None
        if max_files is not None:
            link.max_files = max_files
        if max_file_size_bytes is not None:
            link.max_file_size_bytes = max_file_size_bytes
        await self.db.commit()
        logger.info(f"Link {link.id} settings updated by {actor.describe()}")
        return link
