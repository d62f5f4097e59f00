from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, String, func
from sqlalchemy.dialects.postgresql import UUID

from loyalty_ledger.db.base import Base


class UserRoleEnum(str, Enum):
    CLIENT = "client"
    ADMIN = "admin"
    FINANCE = "finance"


class UserStatusEnum(str, Enum):
    ACTIVE = "active"
    INVITED = "invited"
    SUSPENDED = "suspended"


class User(Base):
    """Account that owns ledger entries; admins may adjust other users' points."""

    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    email = Column(String, nullable=False, unique=True, index=True)
    display_name = Column(String, nullable=True)
    role = Column(String(length=16), nullable=False, default=UserRoleEnum.CLIENT.value, server_default=UserRoleEnum.CLIENT.value)
    status = Column(String(length=16), nullable=False, default=UserStatusEnum.ACTIVE.value, server_default=UserStatusEnum.ACTIVE.value)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRoleEnum.ADMIN.value
