from sqlalchemy import Column, String, ForeignKey, Index, Uuid
from sqlalchemy.orm import relationship
import uuid
from foldly.db.base import Base, TimestampMixin

class Folder(Base, TimestampMixin):
    __tablename__ = "folders"
    __table_args__ = (
        Index("ix_folders_workspace_parent", "workspace_id", "parent_folder_id"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id = Column(Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    parent_folder_id = Column(Uuid, ForeignKey("folders.id", ondelete="CASCADE"))

    # Shared context: set while a link is bound to this folder
    link_id = Column(Uuid, ForeignKey("links.id", ondelete="SET NULL"), unique=True)

    # Folder Info
    name = Column(String(255), nullable=False)
    created_by_email = Column(String(255))

    # Relationships
    workspace = relationship("Workspace", back_populates="folders")
    link = relationship("Link", foreign_keys=[link_id])
    files = relationship("File", back_populates="folder", passive_deletes=True)
