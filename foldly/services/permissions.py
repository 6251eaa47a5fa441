"""Per-link access control.

Roles form a closed set. ``owner`` is never stored; it is derived from the
workspace belonging to the caller. Every mutating operation goes through
``PermissionEngine.authorize`` which resolves the caller's role on the
nearest link at or above the target folder and applies ``can``.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
import logging
import uuid
from typing import Callable, Optional
from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from foldly.config import settings
from foldly.core.actor import Actor, normalize_email
from foldly.core.errors import (
    InvalidInput,
    LinkInactive,
    NotAuthorized,
    NotFound,
    Unauthorized,
    VerificationFailed,
)
from foldly.core.monitoring import log_rejection
from foldly.core.security import generate_otp, hash_otp, verify_link_password, verify_otp
from foldly.models.folder import Folder
from foldly.models.link import Link
from foldly.models.permission import Permission
from foldly.models.workspace import Workspace
from foldly.services.hierarchy import FolderTree

logger = logging.getLogger(__name__)


class Role(str, Enum):
    OWNER = "owner"
    EDITOR = "editor"
    PENDING_EDITOR = "pending_editor"
    UPLOADER = "uploader"


class Action(str, Enum):
    UPLOAD = "upload"
    CREATE_FOLDER = "create_folder"
    READ = "read"
    RENAME = "rename"
    MOVE = "move"
    DELETE = "delete"


CREATE_ACTIONS = {Action.UPLOAD, Action.CREATE_FOLDER}
MANAGE_ACTIONS = {Action.READ, Action.RENAME, Action.MOVE, Action.DELETE}

OtpSender = Callable[[str, str, Link], None]

# Dialects with INSERT .. ON CONFLICT DO NOTHING
UPSERT_INSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


def can(role: Optional[Role], action: Action, actor: Actor, owned_by: Optional[str] = None) -> bool:
    """Capability check for one action on one object.

    ``owned_by`` is the attribution email of the target (file uploader or
    folder creator). Uploaders may only manage objects attributed to their
    own verified email; anonymous callers never have one.
    """
    if role is None:
        return False
    if role == Role.OWNER:
        return True
    if action in CREATE_ACTIONS:
        return True
    if role == Role.EDITOR:
        return action in MANAGE_ACTIONS
    # uploader / pending_editor
    email = actor.verified_email
    return email is not None and owned_by is not None and normalize_email(owned_by) == email


def is_link_live(link: Optional[Link], now: Optional[datetime] = None) -> bool:
    if link is None or not link.is_active:
        return False
    if link.expires_at is not None and link.expires_at <= (now or datetime.utcnow()):
        return False
    return True


@dataclass
class Access:
    role: Optional[Role]
    link: Optional[Link] = None
    permission: Optional[Permission] = None
    # Folder the link is bound to; None when access is workspace ownership
    link_folder_id: Optional[uuid.UUID] = None


def _send_code_via_celery(email: str, code: str, link: Link):
    from foldly.workers.tasks import send_editor_verification_code
    send_editor_verification_code.delay(email, code, link.title or link.slug)


class PermissionEngine:
    def __init__(self, db: AsyncSession, otp_sender: Optional[OtpSender] = None):
        self.db = db
        self.otp_sender = otp_sender or _send_code_via_celery

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_link(self, link_id: uuid.UUID) -> Link:
        link = await self.db.get(Link, link_id)
        if link is None:
            raise NotFound("Link not found", {"link_id": str(link_id)})
        return link

    async def get_permission(self, link_id: uuid.UUID, email: Optional[str]) -> Optional[Permission]:
        email = normalize_email(email)
        if email is None:
            return None
        result = await self.db.execute(
            select(Permission).where(Permission.link_id == link_id, Permission.email == email)
        )
        return result.scalar_one_or_none()

    async def _owned_link(self, actor: Actor, link_id: uuid.UUID, operation: str) -> Link:
        link = await self.get_link(link_id)
        if actor.is_anonymous or link.owner_user_id != actor.user_id:
            log_rejection(logger, operation, actor.describe(), "not link owner", link_id=str(link_id))
            raise Unauthorized("Only the link owner can manage permissions")
        return link

    # ------------------------------------------------------------------
    # Role resolution and authorization
    # ------------------------------------------------------------------

    async def resolve_access(self, actor: Actor, workspace: Workspace, tree: FolderTree,
                             folder_id: Optional[uuid.UUID]) -> Access:
        if not actor.is_anonymous and workspace.user_id == actor.user_id:
            linked = tree.nearest_linked(folder_id)
            return Access(Role.OWNER, link_folder_id=linked.id if linked else None)

        linked = tree.nearest_linked(folder_id)
        if linked is None:
            return Access(None)
        link = await self.get_link(linked.link_id)
        permission = await self.get_permission(link.id, actor.email)

        if permission is not None:
            if permission.is_removed:
                return Access(None, link, permission, linked.id)
            role = Role(permission.role)
            # A claimed (unverified) email never carries editor rights
            if role == Role.EDITOR and not actor.email_verified:
                role = Role.UPLOADER
            return Access(role, link, permission, linked.id)

        if link.link_type == "public":
            return Access(Role.UPLOADER, link, None, linked.id)
        return Access(None, link, None, linked.id)

    def check_upload_allowed(self, link: Link, permission: Optional[Permission],
                             password: Optional[str] = None, role: Optional[Role] = None,
                             new_content: bool = True):
        if not is_link_live(link):
            raise LinkInactive("This link is no longer accepting uploads", {"link_id": str(link.id)})
        if permission is not None and permission.is_removed:
            raise NotAuthorized("This email is no longer allowed to upload to this link")
        if link.link_type == "dedicated" and permission is None:
            raise NotAuthorized("This email is not on the link's allow-list")
        # Verified editors skip the link password
        if new_content and link.require_password and role != Role.EDITOR \
                and not verify_link_password(password, link.password_hash):
            raise NotAuthorized("This link requires a valid password", {"password_required": True})

    async def authorize(self, actor: Actor, action: Action, workspace: Workspace, tree: FolderTree,
                        folder_id: Optional[uuid.UUID], owned_by: Optional[str] = None,
                        target_folder: Optional[Folder] = None, link_password: Optional[str] = None,
                        new_content: bool = True) -> Access:
        """Resolve the caller's access at ``folder_id`` and check ``action``.

        ``target_folder`` is set when the object being managed is a folder
        itself; non-owners can never manage the folder a link is bound to.
        ``link_password`` is checked on create actions that bring new content;
        moves pass ``new_content=False``.
        """
        access = await self.resolve_access(actor, workspace, tree, folder_id)
        if access.role == Role.OWNER:
            return access

        if action in CREATE_ACTIONS:
            if access.link is None:
                log_rejection(logger, action.value, actor.describe(), "no link grants access",
                              folder_id=str(folder_id))
                raise Unauthorized("You do not have access to this folder")
            self.check_upload_allowed(access.link, access.permission, link_password, access.role, new_content)
            return access

        if access.link is None or access.role is None:
            log_rejection(logger, action.value, actor.describe(), "no role", folder_id=str(folder_id))
            raise Unauthorized("You do not have access to this folder")
        if not is_link_live(access.link):
            raise LinkInactive("This link is no longer active", {"link_id": str(access.link.id)})
        if target_folder is not None and target_folder.id == access.link_folder_id:
            log_rejection(logger, action.value, actor.describe(), "link folder is owner-managed",
                          folder_id=str(target_folder.id))
            raise Unauthorized("Only the owner can manage the shared folder itself")
        if not can(access.role, action, actor, owned_by):
            log_rejection(logger, action.value, actor.describe(), f"role {access.role.value} lacks capability",
                          folder_id=str(folder_id))
            raise Unauthorized("Your role does not allow this action")
        return access

    # ------------------------------------------------------------------
    # Allow-list management
    # ------------------------------------------------------------------

    async def list_permissions(self, actor: Actor, link_id: uuid.UUID, include_removed: bool = False) -> list[Permission]:
        await self._owned_link(actor, link_id, "list_permissions")
        query = select(Permission).where(Permission.link_id == link_id)
        if not include_removed:
            query = query.where(Permission.removed_at.is_(None))
        result = await self.db.execute(query.order_by(Permission.created_at))
        return list(result.scalars().all())

    async def add_permission(self, actor: Actor, link_id: uuid.UUID, email: str,
                             role: Role = Role.UPLOADER) -> Permission:
        link = await self._owned_link(actor, link_id, "add_permission")
        email = normalize_email(email)
        if email is None:
            raise InvalidInput("Email is required")
        if role == Role.OWNER:
            raise InvalidInput("Owner is implied by link ownership and cannot be granted")

        permission = await self.get_permission(link_id, email)
        if permission is None:
            permission = Permission(link_id=link_id, email=email, role=Role.UPLOADER.value)
            self.db.add(permission)
        elif permission.is_removed:
            permission.removed_at = None
            permission.role = Role.UPLOADER.value
        await self.db.commit()
        logger.info(f"Permission granted on link {link_id} to {email} by {actor.describe()}")

        if role in (Role.EDITOR, Role.PENDING_EDITOR) and permission.role == Role.UPLOADER.value:
            return await self._start_promotion(link, permission)
        return permission

    async def ensure_uploader(self, link: Link, email: Optional[str]) -> Optional[Permission]:
        """Auto-append a first-time public uploader. Never revives removed rows.

        Caller commits; runs inside the upload transaction.
        """
        email = normalize_email(email)
        if email is None:
            return None
        permission = await self.get_permission(link.id, email)
        if permission is not None:
            return permission

        # Concurrent first uploads from one email race on uq_permissions_link_email
        insert = UPSERT_INSERTS.get(self.db.get_bind().dialect.name)
        if insert is None:
            permission = Permission(link_id=link.id, email=email, role=Role.UPLOADER.value)
            self.db.add(permission)
            await self.db.flush()
        else:
            await self.db.execute(
                insert(Permission)
                .values(id=uuid.uuid4(), link_id=link.id, email=email, role=Role.UPLOADER.value)
                .on_conflict_do_nothing(index_elements=["link_id", "email"])
            )
            permission = await self.get_permission(link.id, email)
        logger.info(f"Auto-added uploader {email} to public link {link.id}")
        return permission

    async def remove_permission(self, actor: Actor, link_id: uuid.UUID, email: str) -> Permission:
        await self._owned_link(actor, link_id, "remove_permission")
        permission = await self.get_permission(link_id, email)
        if permission is None or permission.is_removed:
            raise NotFound("Permission not found", {"email": normalize_email(email)})
        permission.removed_at = datetime.utcnow()
        permission.verification_code_hash = None
        permission.verification_expires_at = None
        await self.db.commit()
        logger.info(f"Permission removed on link {link_id} for {permission.email} by {actor.describe()}")
        return permission

    # ------------------------------------------------------------------
    # Editor promotion: uploader -> pending_editor -> editor
    # ------------------------------------------------------------------

    async def request_editor_promotion(self, actor: Actor, link_id: uuid.UUID, email: str) -> Permission:
        link = await self._owned_link(actor, link_id, "request_editor_promotion")
        permission = await self.get_permission(link_id, email)
        if permission is None or permission.is_removed:
            raise NotFound("Permission not found", {"email": normalize_email(email)})
        if permission.role == Role.EDITOR.value:
            return permission
        return await self._start_promotion(link, permission)

    async def _start_promotion(self, link: Link, permission: Permission) -> Permission:
        code = generate_otp()
        permission.role = Role.PENDING_EDITOR.value
        permission.verification_code_hash = hash_otp(code)
        permission.verification_expires_at = datetime.utcnow() + timedelta(minutes=settings.EDITOR_OTP_EXPIRY_MINUTES)
        permission.verification_attempts = 0
        await self.db.commit()
        self.otp_sender(permission.email, code, link)
        logger.info(f"Editor promotion pending for {permission.email} on link {link.id}")
        return permission

    async def verify_editor_promotion(self, link_id: uuid.UUID, email: str, code: str,
                                      now: Optional[datetime] = None) -> Permission:
        now = now or datetime.utcnow()
        permission = await self.get_permission(link_id, email)
        if permission is None or permission.is_removed:
            raise NotFound("Permission not found", {"email": normalize_email(email)})
        if permission.role == Role.EDITOR.value:
            return permission
        if permission.role != Role.PENDING_EDITOR.value:
            raise VerificationFailed("No pending editor promotion for this email")

        if permission.verification_expires_at is None or permission.verification_expires_at <= now:
            self._demote(permission)
            await self.db.commit()
            logger.info(f"Editor promotion expired for {permission.email} on link {link_id}")
            raise VerificationFailed("Verification code expired")

        if not verify_otp(code, permission.verification_code_hash):
            permission.verification_attempts = (permission.verification_attempts or 0) + 1
            exhausted = permission.verification_attempts >= settings.EDITOR_OTP_MAX_ATTEMPTS
            if exhausted:
                self._demote(permission)
            await self.db.commit()
            log_rejection(logger, "verify_editor_promotion", permission.email, "invalid code",
                          link_id=str(link_id), attempts=permission.verification_attempts)
            raise VerificationFailed(
                "Too many invalid attempts" if exhausted else "Invalid verification code",
                {"attempts": permission.verification_attempts},
            )

        permission.role = Role.EDITOR.value
        permission.verified_at = now
        permission.verification_code_hash = None
        permission.verification_expires_at = None
        permission.verification_attempts = 0
        await self.db.commit()
        logger.info(f"{permission.email} promoted to editor on link {link_id}")
        return permission

    async def demote_editor(self, actor: Actor, link_id: uuid.UUID, email: str) -> Permission:
        await self._owned_link(actor, link_id, "demote_editor")
        permission = await self.get_permission(link_id, email)
        if permission is None or permission.is_removed:
            raise NotFound("Permission not found", {"email": normalize_email(email)})
        self._demote(permission)
        await self.db.commit()
        return permission

    async def expire_pending_promotions(self, now: Optional[datetime] = None) -> int:
        """Sweep: pending editors whose code expired fall back to uploader."""
        now = now or datetime.utcnow()
        result = await self.db.execute(
            update(Permission)
            .where(
                Permission.role == Role.PENDING_EDITOR.value,
                Permission.verification_expires_at <= now,
            )
            .values(
                role=Role.UPLOADER.value,
                verification_code_hash=None,
                verification_expires_at=None,
                verification_attempts=0,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount:
            logger.info(f"Expired {result.rowcount} pending editor promotions")
        return result.rowcount

    @staticmethod
    def _demote(permission: Permission):
        permission.role = Role.UPLOADER.value
        permission.verification_code_hash = None
        permission.verification_expires_at = None
        permission.verification_attempts = 0
