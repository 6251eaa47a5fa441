from sqlalchemy import Column, String, BigInteger, ForeignKey, Uuid
from sqlalchemy.orm import relationship
import uuid
from foldly.db.base import Base, TimestampMixin

class Workspace(Base, TimestampMixin):
    __tablename__ = "workspaces"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    name = Column(String(255), nullable=False, default="My Files")

    # Quota ledger
    storage_used_bytes = Column(BigInteger, nullable=False, default=0)
    storage_limit_bytes = Column(BigInteger, nullable=False)

    # Relationships
    user = relationship("User", back_populates="workspace")
    folders = relationship("Folder", back_populates="workspace", cascade="all, delete-orphan", passive_deletes=True)
    files = relationship("File", back_populates="workspace", cascade="all, delete-orphan", passive_deletes=True)
