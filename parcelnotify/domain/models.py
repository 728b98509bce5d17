from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


SMS_READY_STATUSES = ("queued", "retrying")
PROVIDER_STATUSES = ("delivered", "failed", "not delivered")


def new_sms_id() -> str:
    return uuid4().hex[:16]


class UTCDateTime(TypeDecorator):
    # Store UTC and always hand back aware datetimes, including on SQLite which drops tzinfo.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class Household(Base):
    __tablename__ = "households"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    first_name: Mapped[str] = mapped_column(String)
    last_name: Mapped[str] = mapped_column(String)
    phone_number: Mapped[str] = mapped_column(String)
    locale: Mapped[str] = mapped_column(String, default="sv")
    # Set when personal data is purged; no further messages may reach the household.
    anonymized_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())


class PickupLocation(Base):
    __tablename__ = "pickup_locations"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    street_address: Mapped[str] = mapped_column(String, default="")


class FoodParcel(Base):
    __tablename__ = "food_parcels"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    household_id: Mapped[str] = mapped_column(String, ForeignKey("households.id"), index=True)
    pickup_location_id: Mapped[str] = mapped_column(String, ForeignKey("pickup_locations.id"))
    pickup_date_time_earliest: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    pickup_date_time_latest: Mapped[datetime] = mapped_column(UTCDateTime)
    is_picked_up: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Soft delete keeps history for cancellation messages and statistics.
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class OutgoingSms(Base):
    __tablename__ = "outgoing_sms"
    __table_args__ = (
        Index("idx_outgoing_sms_id_unique", "id", unique=True),
        Index("idx_outgoing_sms_idempotency_unique", "idempotency_key", unique=True),
        Index("idx_outgoing_sms_status_next_attempt", "status", "next_attempt_at"),
        Index("idx_outgoing_sms_provider_message_id", "provider_message_id"),
        {"sqlite_autoincrement": True},
    )

    # Database-assigned insertion sequence; the deterministic tie-break for equal due times.
    seq: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    id: Mapped[str] = mapped_column(String, nullable=False, default=new_sms_id)
    intent: Mapped[str] = mapped_column(String)
    parcel_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    household_id: Mapped[str] = mapped_column(String, index=True)
    to_e164: Mapped[str] = mapped_column(String)
    text: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String, default="queued")
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String)
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Delivery outcome reported later by the gateway callback: delivered, failed, not delivered.
    provider_status: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_status_updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Set by a successful claim; the recovery sweep measures staleness from here.
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    dismissed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    dismissed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
