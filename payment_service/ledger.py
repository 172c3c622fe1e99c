"""
Payment ledger: durable record of every payment attempt.

All writes are single conditional statements: inserts go through the
dialect's ``INSERT ... ON CONFLICT`` and status changes are compare-and-set
from PENDING. Two deliveries of the same webhook can therefore never both
move an intent to a terminal state.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payment_service.database import create_session_factory
from payment_service.gateways.base import WebhookEvent
from payment_service.models import PaymentIntent, PaymentStatus, utcnow

logger = logging.getLogger(__name__)

PENDING = PaymentStatus.PENDING.value

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def new_payment_id() -> str:
    return str(uuid.uuid4())


class PaymentLedger:
    def __init__(self, engine: Engine):
        try:
            self._insert = _INSERTS[engine.dialect.name]
        except KeyError:
            raise RuntimeError(f"No atomic upsert support for the {engine.dialect.name} dialect")
        self.session_factory = create_session_factory(engine)

    # -- plain reads ---------------------------------------------------

    def get(self, payment_id: str) -> Optional[PaymentIntent]:
        with self.session_factory() as db:
            return db.get(PaymentIntent, payment_id)

    def find_by_transaction(self, provider: str, transaction_id: str) -> Optional[PaymentIntent]:
        with self.session_factory() as db:
            return self._by_transaction(db, provider, transaction_id)

    def find_by_order_ref(self, provider: str, order_ref: str) -> Optional[PaymentIntent]:
        with self.session_factory() as db:
            return db.scalars(
                select(PaymentIntent)
                .where(PaymentIntent.provider == provider, PaymentIntent.order_ref == order_ref)
                .order_by(PaymentIntent.created_at.desc())
                .limit(1)
            ).first()

    def unconfirmed(self) -> List[PaymentIntent]:
        """Terminal intents the booking service has not acknowledged yet."""
        with self.session_factory() as db:
            return list(db.scalars(
                select(PaymentIntent)
                .where(PaymentIntent.status != PENDING, PaymentIntent.confirmed_at.is_(None))
                .order_by(PaymentIntent.updated_at)
            ))

    # -- writes --------------------------------------------------------

    def upsert(
        self,
        payment_id: str,
        *,
        booking_id: str,
        provider: str,
        status: PaymentStatus,
        gateway_ref: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **fields: Any,
    ) -> bool:
        """Insert the intent, or update it in the same statement.

        The update half only applies while the stored status is PENDING or
        already equals the incoming one, so a terminal outcome is never
        overwritten by a different one. Returns whether a row was written.
        """
        now = utcnow()
        stmt = self._insert(PaymentIntent).values(
            payment_id=payment_id,
            booking_id=booking_id,
            provider=provider,
            status=status.value,
            provider_transaction_id=gateway_ref,
            raw_provider_payload=metadata or {},
            created_at=now,
            updated_at=now,
            **fields,
        )
        excluded = stmt.excluded
        stmt = stmt.on_conflict_do_update(
            index_elements=[PaymentIntent.payment_id],
            set_={
                "status": excluded.status,
                "provider_transaction_id": excluded.provider_transaction_id,
                "raw_provider_payload": excluded.raw_provider_payload,
                "updated_at": excluded.updated_at,
            },
            where=or_(PaymentIntent.status == PENDING, PaymentIntent.status == excluded.status),
        )
        with self.session_factory() as db:
            with db.begin():
                result = db.execute(stmt)
        return result.rowcount == 1

    def record_intent(
        self,
        *,
        booking_id: str,
        provider: str,
        amount: int,
        currency: str,
        order_ref: Optional[str] = None,
        gateway_ref: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentIntent:
        payment_id = new_payment_id()
        self.upsert(
            payment_id,
            booking_id=booking_id,
            provider=provider,
            status=PaymentStatus.PENDING,
            gateway_ref=gateway_ref,
            metadata=metadata,
            amount=amount,
            currency=currency,
            order_ref=order_ref,
        )
        return self.get(payment_id)

    def update_status(
        self,
        payment_id: str,
        status: PaymentStatus,
        gateway_ref: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Compare-and-set from PENDING. True only for the caller that moved it."""
        with self.session_factory() as db:
            with db.begin():
                return self._transition(db, payment_id, status, gateway_ref, metadata)

    def mark_confirmed(self, payment_id: str) -> None:
        with self.session_factory() as db:
            with db.begin():
                db.execute(
                    update(PaymentIntent)
                    .where(PaymentIntent.payment_id == payment_id, PaymentIntent.confirmed_at.is_(None))
                    .values(confirmed_at=utcnow())
                    .execution_options(synchronize_session=False)
                )

    def apply_result(self, event: WebhookEvent) -> Tuple[PaymentIntent, bool]:
        """Move the intent behind ``event`` to its terminal status.

        Returns the intent as stored afterwards and whether this call made
        the transition. A False means the intent was already terminal, either
        from an earlier delivery or from a concurrent one that won the race.
        """
        try:
            return self._apply_result(event)
        except IntegrityError:
            # a concurrent first-contact insert took the transaction id
            # while we were claiming a pre-created intent with it
            logger.info(
                "Retrying %s transaction %s after a concurrent insert",
                event.provider.value, event.provider_transaction_id,
            )
            return self._apply_result(event)

    def _apply_result(self, event: WebhookEvent) -> Tuple[PaymentIntent, bool]:
        provider = event.provider.value
        transaction_id = event.provider_transaction_id
        with self.session_factory() as db:
            with db.begin():
                intent = self._by_transaction(db, provider, transaction_id)
                if intent is None and event.order_ref:
                    intent = self._unclaimed(db, provider, PaymentIntent.order_ref == event.order_ref)
                elif intent is None and event.booking_id:
                    intent = self._unclaimed(db, provider, PaymentIntent.booking_id == event.booking_id)
                if intent is None:
                    now = utcnow()
                    db.execute(
                        self._insert(PaymentIntent)
                        .values(
                            payment_id=new_payment_id(),
                            booking_id=event.booking_id,
                            provider=provider,
                            provider_transaction_id=transaction_id,
                            order_ref=event.order_ref,
                            amount=event.amount,
                            status=PENDING,
                            raw_provider_payload=event.raw,
                            created_at=now,
                            updated_at=now,
                        )
                        .on_conflict_do_nothing(index_elements=["provider", "provider_transaction_id"])
                    )
                    intent = self._by_transaction(db, provider, transaction_id)

                if intent.status != PENDING:
                    return intent, False
                applied = self._transition(db, intent.payment_id, event.status, transaction_id, event.raw)
                intent = db.get(PaymentIntent, intent.payment_id, populate_existing=True)
        return intent, applied

    # -- helpers -------------------------------------------------------

    @staticmethod
    def _by_transaction(db: Session, provider: str, transaction_id: str) -> Optional[PaymentIntent]:
        return db.scalars(
            select(PaymentIntent).where(
                PaymentIntent.provider == provider,
                PaymentIntent.provider_transaction_id == transaction_id,
            )
        ).first()

    @staticmethod
    def _unclaimed(db: Session, provider: str, match: Any) -> Optional[PaymentIntent]:
        """Newest PENDING intent that has no provider transaction id yet."""
        return db.scalars(
            select(PaymentIntent)
            .where(
                PaymentIntent.provider == provider,
                match,
                PaymentIntent.status == PENDING,
                PaymentIntent.provider_transaction_id.is_(None),
            )
            .order_by(PaymentIntent.created_at.desc())
            .limit(1)
        ).first()

    @staticmethod
    def _transition(
        db: Session,
        payment_id: str,
        status: PaymentStatus,
        gateway_ref: Optional[str],
        metadata: Optional[Dict[str, Any]],
    ) -> bool:
        values: Dict[str, Any] = {"status": status.value, "updated_at": utcnow()}
        conditions = [PaymentIntent.payment_id == payment_id, PaymentIntent.status == PENDING]
        if gateway_ref is not None:
            values["provider_transaction_id"] = gateway_ref
            conditions.append(or_(
                PaymentIntent.provider_transaction_id.is_(None),
                PaymentIntent.provider_transaction_id == gateway_ref,
            ))
        if metadata is not None:
            values["raw_provider_payload"] = metadata
        result = db.execute(
            update(PaymentIntent)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
