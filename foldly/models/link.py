from sqlalchemy import BigInteger, Column, Integer, String, Boolean, ForeignKey, DateTime, Uuid
from sqlalchemy.orm import relationship
import uuid
from foldly.db.base import Base, TimestampMixin

class Link(Base, TimestampMixin):
    """Shareable identity of a folder.

    The binding itself lives on ``Folder.link_id``; ``folder_id`` here records
    the folder the link was last bound to. Rows are deactivated, never deleted,
    when their folder is unlinked or removed.
    """
    __tablename__ = "links"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_user_id = Column(String(255), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    workspace_id = Column(Uuid, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    folder_id = Column(Uuid, index=True)

    # Public handle used in upload URLs
    slug = Column(String(64), unique=True, nullable=False, index=True)
    title = Column(String(255))

    link_type = Column(String(20), nullable=False, default="public")  # public, dedicated
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime)  # naive UTC

    # Upload gating for non-owners; NULL means no password / no cap
    password_hash = Column(String(128))
    max_files = Column(Integer)
    max_file_size_bytes = Column(BigInteger)

    # Usage through this link. total_files and total_size_bytes follow deletes
    total_uploads = Column(Integer, nullable=False, default=0)
    total_files = Column(Integer, nullable=False, default=0)
    total_size_bytes = Column(BigInteger, nullable=False, default=0)
    last_upload_at = Column(DateTime)

    # Relationships
    permissions = relationship("Permission", back_populates="link", cascade="all, delete-orphan", passive_deletes=True)

    @property
    def require_password(self) -> bool:
        return self.password_hash is not None
