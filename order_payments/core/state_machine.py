"""
Payment state machine.

Pure functions over a snapshot of a payment record. Every webhook, poll
and admin action goes through here before anything is written, so all
sources of truth agree on the same transitions:

    pending -> processing       funds seen or payer approved
    pending|processing -> completed
                                confirmations reached and enough paid
    pending|processing -> underpaid
                                confirmations reached or window over,
                                with less than the tolerance allows
    underpaid -> completed      top-up arrives
    pending|processing -> expired
                                window over with nothing paid
    pending|processing -> failed|cancelled
                                provider reports failure or cancellation
    completed -> refunded       refundable methods only

Confirmations and paid amount only ever grow, so observations can be
applied in any order.
"""
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Optional, Tuple

from order_payments.core.errors import InvalidTransition, RefundNotSupported
from order_payments.core.money import from_atomic, to_atomic
from order_payments.core.types import (
    Observation,
    PaymentMethod,
    PaymentStatus,
    RemoteStatus,
)

# Remote statuses that show the payer has acted
MOVEMENT_STATUSES = frozenset(
    {RemoteStatus.APPROVED, RemoteStatus.PAID, RemoteStatus.COMPLETED, RemoteStatus.UNDERPAID}
)


@dataclass(frozen=True)
class PaymentSnapshot:
    """The parts of a payment record the state machine reasons about."""

    method: PaymentMethod
    status: PaymentStatus
    currency: str
    settlement_amount: Decimal
    paid_amount: Decimal
    confirmations: int
    required_confirmations: int
    expiration_time: datetime
    transaction_hash: Optional[str] = None

    @classmethod
    def from_record(cls, record: Any) -> "PaymentSnapshot":
        return cls(
            method=PaymentMethod(record.method),
            status=PaymentStatus(record.status),
            currency=record.settlement_currency,
            settlement_amount=record.settlement_amount,
            paid_amount=record.paid_amount,
            confirmations=record.confirmations,
            required_confirmations=record.required_confirmations,
            expiration_time=record.expiration_time,
            transaction_hash=record.transaction_hash,
        )


@dataclass(frozen=True)
class Transition:
    """Result of applying an observation or action to a snapshot."""

    previous: PaymentSnapshot
    current: PaymentSnapshot
    reason: str

    @property
    def changed(self) -> bool:
        return self.current != self.previous

    @property
    def status_changed(self) -> bool:
        return self.current.status != self.previous.status

    @property
    def completed(self) -> bool:
        return self.status_changed and self.current.status == PaymentStatus.COMPLETED

    @property
    def refunded(self) -> bool:
        return self.status_changed and self.current.status == PaymentStatus.REFUNDED

    def changed_values(self) -> Dict[str, Any]:
        """Column values that differ between the two snapshots."""
        values: Dict[str, Any] = {}
        if self.current.status != self.previous.status:
            values["status"] = self.current.status.value
        if self.current.confirmations != self.previous.confirmations:
            values["confirmations"] = self.current.confirmations
        if self.current.paid_amount != self.previous.paid_amount:
            values["paid_amount_atomic"] = to_atomic(
                self.current.paid_amount, self.current.currency
            )
        if self.current.transaction_hash != self.previous.transaction_hash:
            values["transaction_hash"] = self.current.transaction_hash
        return values


class PaymentStateMachine:
    """Applies observations and explicit actions to payment snapshots."""

    def __init__(
        self,
        underpayment_tolerance: Decimal = Decimal("0.005"),
        refundable_methods: FrozenSet[PaymentMethod] = frozenset({PaymentMethod.WALLET}),
    ):
        self.underpayment_tolerance = underpayment_tolerance
        self.refundable_methods = refundable_methods

    def completion_threshold(self, snapshot: PaymentSnapshot) -> Decimal:
        """Smallest paid amount that completes the payment."""
        return snapshot.settlement_amount * (Decimal(1) - self.underpayment_tolerance)

    def apply(
        self, snapshot: PaymentSnapshot, observation: Observation, now: datetime
    ) -> Transition:
        """
        Merge an observation into a snapshot and resolve the new status.

        Terminal records never change, except that a completed refundable
        payment follows a provider-side refund.

        Args:
            snapshot: Current state of the record
            observation: Facts from a webhook or poll; may be empty
            now: Current UTC time, for lazy expiry

        Returns:
            Transition: Previous and resulting snapshots
        """
        if snapshot.status.is_terminal:
            if (
                snapshot.status == PaymentStatus.COMPLETED
                and observation.remote_status == RemoteStatus.REFUNDED
                and snapshot.method in self.refundable_methods
            ):
                return Transition(
                    snapshot, replace(snapshot, status=PaymentStatus.REFUNDED), "remote_refund"
                )
            return Transition(snapshot, snapshot, "terminal")

        merged = replace(
            snapshot,
            confirmations=max(snapshot.confirmations, observation.confirmations or 0),
            paid_amount=max(snapshot.paid_amount, self._observed_paid(snapshot, observation)),
            transaction_hash=observation.transaction_hash or snapshot.transaction_hash,
        )
        status, reason = self._resolve(merged, observation.remote_status, now)
        return Transition(snapshot, replace(merged, status=status), reason)

    def _observed_paid(self, snapshot: PaymentSnapshot, observation: Observation) -> Decimal:
        if observation.paid_amount is None:
            return Decimal(0)
        # Truncate to the smallest unit actually stored
        return from_atomic(to_atomic(observation.paid_amount, snapshot.currency), snapshot.currency)

    def _resolve(
        self, merged: PaymentSnapshot, remote_status: Optional[RemoteStatus], now: datetime
    ) -> Tuple[PaymentStatus, str]:
        paid = merged.paid_amount

        if remote_status == RemoteStatus.FAILED:
            return PaymentStatus.FAILED, "remote_failed"
        if remote_status == RemoteStatus.CANCELLED and paid == 0:
            return PaymentStatus.CANCELLED, "remote_cancelled"

        enough_paid = paid >= self.completion_threshold(merged)
        confirmed = merged.confirmations >= merged.required_confirmations
        if confirmed and paid > 0:
            if enough_paid:
                return PaymentStatus.COMPLETED, "confirmed"
            return PaymentStatus.UNDERPAID, "confirmed_short"

        window_over = now >= merged.expiration_time or remote_status == RemoteStatus.EXPIRED
        if window_over:
            if paid == 0:
                return PaymentStatus.EXPIRED, "expired"
            if not enough_paid:
                return PaymentStatus.UNDERPAID, "expired_short"
            # Enough in flight; keep waiting for confirmations
            return PaymentStatus.PROCESSING, "awaiting_confirmations"

        if merged.status == PaymentStatus.PENDING and (
            merged.confirmations > 0 or paid > 0 or remote_status in MOVEMENT_STATUSES
        ):
            return PaymentStatus.PROCESSING, "movement"
        return merged.status, "observed"

    def expire(self, snapshot: PaymentSnapshot, now: datetime) -> Transition:
        """Lazy expiry: apply an empty observation at the current time."""
        return self.apply(snapshot, Observation(), now)

    def cancel(self, snapshot: PaymentSnapshot) -> Transition:
        """
        Cancel a payment nobody has acted on yet.

        Raises:
            InvalidTransition: If the payment is not pending
        """
        if snapshot.status != PaymentStatus.PENDING:
            raise InvalidTransition(f"Cannot cancel a payment in status {snapshot.status.value}")
        return Transition(snapshot, replace(snapshot, status=PaymentStatus.CANCELLED), "cancelled")

    def refund(self, snapshot: PaymentSnapshot) -> Transition:
        """
        Refund a completed payment.

        Raises:
            RefundNotSupported: If the method has no refunds
            InvalidTransition: If the payment is not completed
        """
        if snapshot.method not in self.refundable_methods:
            raise RefundNotSupported(snapshot.method.value)
        if snapshot.status != PaymentStatus.COMPLETED:
            raise InvalidTransition(f"Cannot refund a payment in status {snapshot.status.value}")
        return Transition(snapshot, replace(snapshot, status=PaymentStatus.REFUNDED), "refunded")

    @staticmethod
    def is_expired(snapshot: PaymentSnapshot, now: datetime) -> bool:
        """Expired status, or still open past the end of the payment window."""
        if snapshot.status == PaymentStatus.EXPIRED:
            return True
        return not snapshot.status.is_terminal and now >= snapshot.expiration_time
