import enum
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, String, UniqueConstraint

from payment_service.database import Base


class Provider(str, enum.Enum):
    MOMO = "momo"
    ZALOPAY = "zalopay"
    PAYOS = "payos"
    CARD = "card"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentIntent(Base):
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("provider", "provider_transaction_id", name="uq_payments_provider_transaction"),
    )

    payment_id = Column(String, primary_key=True)
    booking_id = Column(String, index=True, nullable=False)
    provider = Column(String, nullable=False)
    provider_transaction_id = Column(String, nullable=True)
    order_ref = Column(String, index=True, nullable=True)   # client-generated order id
    amount = Column(Integer)
    currency = Column(String)
    status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    raw_provider_payload = Column(JSON)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)  # booking service acknowledged
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "paymentId": self.payment_id,
            "bookingId": self.booking_id,
            "provider": self.provider,
            "providerTransactionId": self.provider_transaction_id,
            "orderRef": self.order_ref,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "confirmed": self.confirmed_at is not None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
