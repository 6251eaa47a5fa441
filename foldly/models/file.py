from sqlalchemy import Column, String, BigInteger, ForeignKey, Text, DateTime, Index, Uuid
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
from foldly.db.base import Base, TimestampMixin

class File(Base, TimestampMixin):
    __tablename__ = "files"
    __table_args__ = (
        Index("ix_files_workspace_uploader", "workspace_id", "uploader_email"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id = Column(Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    folder_id = Column(Uuid, ForeignKey("folders.id", ondelete="CASCADE"), index=True)
    link_id = Column(Uuid, ForeignKey("links.id", ondelete="SET NULL"))

    # File Info
    filename = Column(String(500), nullable=False)
    original_filename = Column(String(500), nullable=False)
    size_bytes = Column(BigInteger, nullable=False)
    mime_type = Column(String(100), nullable=False, default="application/octet-stream")

    # Storage
    storage_key = Column(Text, nullable=False)

    # Attribution
    uploader_email = Column(String(255))
    uploader_name = Column(String(255))
    uploaded_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    workspace = relationship("Workspace", back_populates="files")
    folder = relationship("Folder", back_populates="files")
