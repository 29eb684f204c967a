from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.tracking import utcnow
from app.db.base import Base
from app.db.types import UTCDateTime, UUIDType


class ClickEvent(Base):
    """
    Immutable click ledger entry.

    fingerprint is derived at insert time from ip|user_agent|session_id
    (see app.core.tracking.compute_fingerprint); device/browser/os are parsed
    from the user agent. Rows are never updated.
    """

    __tablename__ = "click_events"
    __table_args__ = (
        Index("ix_click_events_tracking_ts", "tracking_code", "timestamp"),
        Index("ix_click_events_session_ts", "session_id", "timestamp"),
        Index("ix_click_events_fingerprint_ts", "fingerprint", "timestamp"),
        Index("ix_click_events_ip_ts", "ip_address", "timestamp"),
        Index("ix_click_events_customer_ts", "customer_id", "timestamp"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)

    tracking_code: Mapped[str] = mapped_column(String(64), nullable=False)
    ip_address: Mapped[str] = mapped_column(String(64), nullable=False)
    user_agent: Mapped[str] = mapped_column(Text, nullable=False)
    referrer: Mapped[str | None] = mapped_column(Text, nullable=True)
    session_id: Mapped[str] = mapped_column(String(128), nullable=False)
    customer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)

    device: Mapped[str | None] = mapped_column(String(20), nullable=True)
    browser: Mapped[str | None] = mapped_column(String(20), nullable=True)
    os: Mapped[str | None] = mapped_column(String(20), nullable=True)
    country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)

    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, index=True)
