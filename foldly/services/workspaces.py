import logging
from typing import Optional
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from foldly.core.actor import normalize_email
from foldly.core.errors import InvalidInput, NotFound, StorageUnavailable
from foldly.models.file import File
from foldly.models.folder import Folder
from foldly.models.link import Link
from foldly.models.permission import Permission
from foldly.models.user import User
from foldly.models.workspace import Workspace
from foldly.services.quota import PLAN_STORAGE_LIMITS, QuotaAccountant, storage_limit_for_plan
from foldly.services.storage import StorageGateway

logger = logging.getLogger(__name__)


class WorkspaceService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_workspace_for_user(self, user_id: str) -> Workspace:
        result = await self.db.execute(select(Workspace).where(Workspace.user_id == user_id))
        workspace = result.scalar_one_or_none()
        if workspace is None:
            raise NotFound("Workspace not found", {"user_id": user_id})
        return workspace

    async def provision_user(self, user_id: str, email: str, name: Optional[str] = None,
                             plan: Optional[str] = None) -> Workspace:
        """Signup hook: create the user and their single workspace. Idempotent."""
        email = normalize_email(email)
        if not user_id or not email:
            raise InvalidInput("User id and email are required")
        if plan is not None and plan not in PLAN_STORAGE_LIMITS:
            raise InvalidInput(f"Unknown plan '{plan}'")

        user = await self.db.get(User, user_id)
        if user is None:
            user = User(id=user_id, email=email, name=name, plan=plan or "free")
            self.db.add(user)
            logger.info(f"New user provisioned: {user_id}")
        else:
            user.email = email
            if name:
                user.name = name
            if plan and plan != user.plan:
                user.plan = plan

        result = await self.db.execute(select(Workspace).where(Workspace.user_id == user_id))
        workspace = result.scalar_one_or_none()
        if workspace is None:
            workspace = Workspace(
                user_id=user_id,
                storage_used_bytes=0,
                storage_limit_bytes=storage_limit_for_plan(user.plan),
            )
            self.db.add(workspace)
        else:
            workspace.storage_limit_bytes = storage_limit_for_plan(user.plan)

        await self.db.commit()
        return workspace

    async def storage_summary(self, user_id: str) -> dict:
        workspace = await self.get_workspace_for_user(user_id)
        return await QuotaAccountant(self.db).usage_summary(workspace.id)

    async def delete_account(self, user_id: str, storage: StorageGateway) -> dict:
        """Delete every stored object, then every row the user owns.

        Stops before touching the database rows of anything whose object
        could not be removed; the caller can retry.
        """
        workspace = await self.get_workspace_for_user(user_id)
        result = await self.db.execute(select(File).where(File.workspace_id == workspace.id))
        files = list(result.scalars().all())

        deleted, failed = [], []
        for file in files:
            try:
                storage.delete(file.storage_key)
                deleted.append(file)
            except StorageUnavailable as e:
                failed.append({"file_id": str(file.id), "storage_key": file.storage_key, "error": e.message})

        if failed:
            if deleted:
                quota = QuotaAccountant(self.db)
                await quota.release_link_usage(deleted)
                await self.db.execute(
                    delete(File).where(File.id.in_([f.id for f in deleted]))
                    .execution_options(synchronize_session=False)
                )
                for f in deleted:
                    self.db.expunge(f)
                await quota.reconcile(workspace.id)
            await self.db.commit()
            logger.warning(f"Account deletion for {user_id} incomplete: {len(failed)} storage deletions failed")
            raise StorageUnavailable("Some files could not be deleted from storage; retry account deletion",
                                     {"failed": failed, "deleted": [str(f.id) for f in deleted]})

        link_ids = select(Link.id).where(Link.workspace_id == workspace.id).scalar_subquery()
        await self.db.execute(delete(File).where(File.workspace_id == workspace.id))
        await self.db.execute(delete(Folder).where(Folder.workspace_id == workspace.id))
        await self.db.execute(delete(Permission).where(Permission.link_id.in_(link_ids)))
        await self.db.execute(delete(Link).where(Link.workspace_id == workspace.id))
        await self.db.execute(delete(Workspace).where(Workspace.id == workspace.id))
        await self.db.execute(delete(User).where(User.id == user_id))
        await self.db.commit()

        logger.info(f"Account {user_id} deleted: {len(deleted)} files removed from storage")
        return {"deleted_files": len(deleted)}
