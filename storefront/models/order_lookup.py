"""
Order Lookup Session Model

One row per normalized email. Tracks one-time code issuance and the
short-lived access token used by guests to view their orders. Rows are
kept as the rate-limit record; only the code and token fields are cleared.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Integer
from sqlalchemy.orm import Mapped, mapped_column

from storefront.database import Base
from storefront.db_types import UTCDateTime


class OrderLookupSession(Base):
    """Per-email verification session for guest order lookup."""
    __tablename__ = "order_lookup_sessions"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True
    )

    email: Mapped[str] = mapped_column(
        String(191),
        unique=True,
        nullable=False,
        comment="Normalized (trimmed, lowercase) email"
    )

    # One-time code (hashed, never stored in plain text)
    code_hash: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True
    )
    code_expires_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime,
        nullable=True
    )
    last_code_sent_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime,
        nullable=True
    )

    # Rate limiting
    attempt_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False
    )
    send_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False
    )

    # Access token issued after successful verification
    active_token: Mapped[Optional[str]] = mapped_column(
        String(80),
        nullable=True,
        index=True
    )
    token_expires_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime,
        nullable=True
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<OrderLookupSession(email='{self.email}', attempts={self.attempt_count}, sends={self.send_count})>"
