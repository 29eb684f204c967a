# backend/app/models/user.py
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from app.core.roles import UserRole, UserStatus
from app.core.tracking import utcnow
from app.db.base import Base
from app.db.types import UTCDateTime, UUIDType

ROLE_MARKETER = UserRole.MARKETER.value
ROLE_ADMIN = UserRole.ADMIN.value

STATUS_ACTIVE = UserStatus.ACTIVE.value


class User(Base):
    """Marketers and platform admins. Customers are tracked by external id only."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)

    email: Mapped[str] = mapped_column(String(320), unique=True, index=True, nullable=False)

    first_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    role: Mapped[str] = mapped_column(String(20), nullable=False, default=ROLE_MARKETER)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=UserStatus.PENDING.value)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_active_marketer(self) -> bool:
        return self.role == ROLE_MARKETER and self.status == STATUS_ACTIVE
