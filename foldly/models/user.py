from sqlalchemy import Column, String
from sqlalchemy.orm import relationship
from foldly.db.base import Base, TimestampMixin

class User(Base, TimestampMixin):
    __tablename__ = "users"

    # Subject claim issued by the identity provider
    id = Column(String(255), primary_key=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255))

    # Subscription
    plan = Column(String(50), default="free", nullable=False)  # free, pro, business

    # Relationships
    workspace = relationship("Workspace", back_populates="user", uselist=False, cascade="all, delete-orphan")
