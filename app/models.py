from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, JSON, String, Text

from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookingStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ON_THE_WAY = "on-the-way"
    ARRIVED = "arrived"
    IN_PROGRESS = "in-progress"
    AWAITING_APPROVAL = "awaiting-customer-approval"
    DISPUTED = "disputed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    ALL = (
        PENDING,
        CONFIRMED,
        ON_THE_WAY,
        ARRIVED,
        IN_PROGRESS,
        AWAITING_APPROVAL,
        DISPUTED,
        COMPLETED,
        CANCELLED,
    )


class DisputeStatus:
    OPEN = "open"
    RESOLVED = "resolved"


class PaymentStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, unique=True, nullable=False, index=True)

    customer_id = Column(String, nullable=False, index=True)
    provider_id = Column(String, nullable=False, index=True)

    service_type = Column(String, nullable=False)
    category = Column(String, nullable=False)
    scheduled_date = Column(DateTime(timezone=True), nullable=False)
    time_slot = Column(String, nullable=False)
    service_address = Column(String, nullable=False)
    additional_notes = Column(String(500), nullable=True)
    customer_attached_photos = Column(JSON, nullable=True)

    # snapshots taken at creation; never synced with later profile edits
    customer_details = Column(JSON, nullable=False)
    provider_details = Column(JSON, nullable=False)
    service_location = Column(JSON, nullable=False)

    status = Column(String, nullable=False, default=BookingStatus.PENDING)
    pricing = Column(JSON, nullable=False)
    timeline = Column(JSON, nullable=False)

    payment = Column(JSON, nullable=True)
    payment_completed = Column(Boolean, nullable=False, default=False)

    provider_location = Column(JSON, nullable=True)
    tracking = Column(JSON, nullable=True)

    # provider-supplied evidence of the job: before/after photo urls, notes
    work_documentation = Column(JSON, nullable=True)

    cancellation_reason = Column(String, nullable=True)
    cancelled_by = Column(String, nullable=True)  # customer/provider
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    rating = Column(Integer, nullable=True)
    review = Column(Text, nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)

    # raised by the customer when rejecting finished work
    dispute = Column(JSON, nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_bookings_customer_status", "customer_id", "status"),
        Index("ix_bookings_provider_status", "provider_id", "status"),
    )

    def role_of(self, subject_id: str) -> str | None:
        if subject_id == self.customer_id:
            return "customer"
        if subject_id == self.provider_id:
            return "provider"
        return None
