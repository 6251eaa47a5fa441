from sqlalchemy import Column, String, Integer, ForeignKey, DateTime, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
import uuid
from foldly.db.base import Base, TimestampMixin

class Permission(Base, TimestampMixin):
    __tablename__ = "permissions"
    __table_args__ = (
        UniqueConstraint("link_id", "email", name="uq_permissions_link_email"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    link_id = Column(Uuid, ForeignKey("links.id", ondelete="CASCADE"), nullable=False)
    email = Column(String(255), nullable=False)

    # Owner is derived from link ownership and never stored
    role = Column(String(20), nullable=False, default="uploader")  # uploader, pending_editor, editor

    # Editor promotion (OTP)
    verification_code_hash = Column(String(64))
    verification_expires_at = Column(DateTime)
    verification_attempts = Column(Integer, nullable=False, default=0)
    verified_at = Column(DateTime)

    # Lenient removal: blocks future uploads, keeps attributed files
    removed_at = Column(DateTime)

    # Relationships
    link = relationship("Link", back_populates="permissions")

    @property
    def is_removed(self) -> bool:
        return self.removed_at is not None
