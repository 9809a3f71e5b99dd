"""
Payment orchestrator.

Orchestrates the payment flow for an order:
1. Validate the order and method
2. Lazily expire, then check for an existing payment
3. Quote the settlement amount
4. Claim the payment record and commit
5. Call the gateway
6. Store the remote reference, or mark the claim failed
"""
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from order_payments.config import Settings
from order_payments.core.errors import (
    GatewayError,
    InvalidMethod,
    InvalidTransition,
    OrderAlreadyPaid,
    OrderNotFound,
    PaymentNotFound,
    PaymentValidationError,
)
from order_payments.core.exchange_rates import ExchangeRateProvider
from order_payments.core.money import format_amount, to_atomic
from order_payments.core.repository import (
    Mutation,
    OrderRepository,
    PaymentRepository,
)
from order_payments.core.state_machine import PaymentSnapshot, PaymentStateMachine
from order_payments.core.types import (
    REPLACEABLE_STATUSES,
    Observation,
    PaymentInstructions,
    PaymentMethod,
    PaymentStatus,
    PaymentStatusView,
)
from order_payments.database.models import PaymentRecord
from order_payments.integrations.base import GatewayAdapter
from order_payments.integrations.webhook_handler import WebhookHandler
from order_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PAYMENT_METHOD_DETAILS = {
    PaymentMethod.WALLET: {
        "name": "PayPal",
        "description": "Pay with your PayPal account or card via PayPal",
    },
    PaymentMethod.BITCOIN: {
        "name": "Bitcoin",
        "description": "Pay with Bitcoin to a one-time address",
    },
    PaymentMethod.MONERO: {
        "name": "Monero",
        "description": "Pay privately with Monero via GloBee",
    },
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentOrchestrator:
    """
    Main payment settlement orchestrator.

    Handles the payment lifecycle for all three methods behind one
    interface, with the state machine as the single authority on status.
    """

    def __init__(
        self,
        settings: Settings,
        rate_provider: ExchangeRateProvider,
        adapters: Dict[PaymentMethod, GatewayAdapter],
        state_machine: Optional[PaymentStateMachine] = None,
        webhook_handler: Optional[WebhookHandler] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize payment orchestrator.

        Args:
            settings: Application settings
            rate_provider: Fiat to crypto exchange rates
            adapters: Gateway adapter per enabled payment method
            state_machine: Optional state machine (built from settings if omitted)
            webhook_handler: Optional webhook handler sharing the state machine
            clock: Returns the current UTC time (injectable for tests)
        """
        self.settings = settings
        self.rate_provider = rate_provider
        self.adapters = adapters
        self.clock = clock or _utcnow
        self.state_machine = state_machine or PaymentStateMachine(
            underpayment_tolerance=settings.underpayment_tolerance,
            refundable_methods=frozenset(
                method for method, adapter in adapters.items() if adapter.supports_refund
            ),
        )
        self.webhook_handler = webhook_handler or WebhookHandler(
            adapters,
            self.state_machine,
            recent_event_ids_limit=settings.recent_webhook_event_ids_limit,
            clock=self.clock,
        )

        logger.info("payment_orchestrator_initialized", methods=[m.value for m in adapters])

    def get_adapter(self, method: Union[PaymentMethod, str]) -> GatewayAdapter:
        """
        Resolve an enabled method to its adapter.

        Raises:
            InvalidMethod: If the method is unknown or disabled
        """
        if not isinstance(method, PaymentMethod):
            method = PaymentMethod.parse(method)
        adapter = self.adapters.get(method)
        if adapter is None:
            raise InvalidMethod(method.value)
        return adapter

    def list_payment_methods(self) -> List[Dict[str, Any]]:
        """Enabled payment methods with their settlement parameters."""
        return [
            {
                "id": method.value,
                "name": PAYMENT_METHOD_DETAILS[method]["name"],
                "description": PAYMENT_METHOD_DETAILS[method]["description"],
                "currency": method.settlement_currency,
                "requiredConfirmations": adapter.required_confirmations,
                "paymentWindowMinutes": self.settings.payment_window_minutes_for(method.value),
                "supportsRefund": adapter.supports_refund,
            }
            for method, adapter in self.adapters.items()
        ]

    async def create_payment(
        self, order_id: str, method: Union[PaymentMethod, str], db: AsyncSession
    ) -> PaymentInstructions:
        """
        Create a payment for an order.

        The record is claimed and committed before the gateway is called,
        so a concurrent request for the same order sees it and is refused.

        Args:
            order_id: Order to pay
            method: Payment method name
            db: Database session

        Returns:
            PaymentInstructions: Amount, address and/or pay URL for the customer

        Raises:
            PaymentValidationError: If the order id is missing
            InvalidMethod: If the method is unknown or disabled
            OrderNotFound: If the order does not exist
            OrderAlreadyPaid: If the order has an active or settled payment
            RateUnavailable: If no usable exchange rate exists
            GatewayError: If the gateway call fails
        """
        start = time.time()
        correlation_id = uuid.uuid4()
        if not order_id or not isinstance(order_id, str):
            raise PaymentValidationError("orderId is required")

        adapter = self.get_adapter(method)
        payment_method = adapter.method

        logger.info(
            "payment_creation_started",
            correlation_id=str(correlation_id),
            order_id=order_id,
            method=payment_method.value,
        )

        order = await OrderRepository(db).get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        if order.payment_status in ("completed", "refunded"):
            self._record_creation(payment_method, "rejected", start)
            raise OrderAlreadyPaid(order_id, order.payment_status)

        payments = PaymentRepository(db)
        existing = await payments.get_by_order_id(order_id)
        if existing is not None:
            existing = await self._expire_if_due(payments, existing, correlation_id)
            status = PaymentStatus(existing.status)
            if status not in REPLACEABLE_STATUSES:
                self._record_creation(payment_method, "rejected", start)
                logger.info(
                    "payment_creation_rejected",
                    correlation_id=str(correlation_id),
                    order_id=order_id,
                    existing_status=status.value,
                )
                raise OrderAlreadyPaid(order_id, status.value)

        target_currency = payment_method.settlement_currency or order.currency
        conversion = await self.rate_provider.convert(
            order.total_amount, order.currency, target_currency
        )
        now = self.clock()
        expires_at = now + adapter.payment_window

        values: Dict[str, Any] = {
            "method": payment_method.value,
            "remote_payment_id": None,
            "settlement_address": None,
            "pay_url": None,
            "requested_amount_minor": order.total_amount_minor,
            "requested_currency": order.currency,
            "settlement_amount_atomic": to_atomic(conversion.amount, conversion.currency),
            "settlement_currency": conversion.currency,
            "exchange_rate": conversion.rate,
            "required_confirmations": adapter.required_confirmations,
            "confirmations": 0,
            "paid_amount_atomic": 0,
            "transaction_hash": None,
            "expiration_time": expires_at,
            "status": PaymentStatus.PENDING.value,
            "last_webhook_event_id": None,
            "recent_webhook_event_ids": [],
            "error_message": None,
            "last_checked_at": None,
        }

        # Claim the record
        if existing is None:
            record = PaymentRecord(order_id=order_id, attempt=1, version=1, **values)
            try:
                await payments.insert(record)
            except IntegrityError:
                await db.rollback()
                self._record_creation(payment_method, "rejected", start)
                logger.info(
                    "payment_creation_lost_race",
                    correlation_id=str(correlation_id),
                    order_id=order_id,
                )
                raise OrderAlreadyPaid(order_id, PaymentStatus.PENDING.value)
        else:
            previous_status = existing.status
            previous_method = existing.method
            previous_attempt = existing.attempt
            previous_references = [existing.remote_payment_id, existing.settlement_address]
            values["attempt"] = existing.attempt + 1
            if not await payments.conditional_update(existing, values):
                self._record_creation(payment_method, "rejected", start)
                raise OrderAlreadyPaid(order_id, PaymentStatus.PENDING.value)
            record = await payments.reload(existing)
            payments.retire_references(
                record, previous_method, previous_attempt, previous_references
            )
            payments.record_event(
                record,
                "payment.replaced",
                {
                    "previous_status": previous_status,
                    "previous_method": previous_method,
                    "previous_remote_payment_id": previous_references[0],
                    "previous_address": previous_references[1],
                    "attempt": record.attempt,
                },
                correlation_id,
            )

        payments.record_event(
            record,
            "payment.created",
            {
                "method": payment_method.value,
                "amount": format_amount(conversion.amount, conversion.currency),
                "currency": conversion.currency,
                "exchange_rate": str(conversion.rate),
                "status": PaymentStatus.PENDING.value,
            },
            correlation_id,
        )
        await db.commit()

        try:
            remote = await adapter.create_payment(order, conversion, expires_at)
        except GatewayError as e:
            await self._mark_creation_failed(payments, record, e, correlation_id)
            self._record_creation(payment_method, "failed", start)
            logger.error(
                "gateway_payment_creation_failed",
                correlation_id=str(correlation_id),
                order_id=order_id,
                method=payment_method.value,
                error=str(e),
                error_type=e.error_type.value,
            )
            raise

        remote_values = {
            "remote_payment_id": remote.remote_id,
            "settlement_address": remote.address,
            "pay_url": remote.pay_url,
            "expiration_time": remote.expires_at or expires_at,
        }
        record, _ = await payments.update_with_retry(
            record, lambda current: Mutation(values=dict(remote_values)), "create"
        )
        payments.record_event(
            record,
            "payment.gateway_created",
            {
                "remote_payment_id": remote.remote_id,
                "address": remote.address,
                "pay_url": remote.pay_url,
            },
            correlation_id,
        )
        await db.commit()

        self._record_creation(payment_method, "created", start)
        logger.info(
            "payment_created_successfully",
            correlation_id=str(correlation_id),
            order_id=order_id,
            method=payment_method.value,
            amount=format_amount(conversion.amount, conversion.currency),
            currency=conversion.currency,
            attempt=record.attempt,
        )

        return PaymentInstructions(
            order_id=order_id,
            order_number=order.order_number,
            method=payment_method,
            amount=conversion.amount,
            currency=conversion.currency,
            exchange_rate=conversion.rate,
            required_confirmations=record.required_confirmations,
            payment_window_minutes=self.settings.payment_window_minutes_for(payment_method.value),
            expires_at=record.expiration_time,
            address=record.settlement_address,
            pay_url=record.pay_url,
            remote_payment_id=record.remote_payment_id,
        )

    async def _mark_creation_failed(
        self,
        payments: PaymentRepository,
        record: PaymentRecord,
        error: GatewayError,
        correlation_id: uuid.UUID,
    ) -> None:
        values = {"status": PaymentStatus.FAILED.value, "error_message": str(error)}

        def compute(current: PaymentRecord) -> Optional[Mutation]:
            if PaymentStatus(current.status) != PaymentStatus.PENDING:
                return None
            return Mutation(values=dict(values))

        record, mutation = await payments.update_with_retry(record, compute, "create_failed")
        if mutation is not None:
            metrics.record_state_transition(
                record.method, PaymentStatus.PENDING.value, PaymentStatus.FAILED.value
            )
            payments.record_event(
                record,
                "payment.failed",
                {"error": str(error), "error_type": error.error_type.value},
                correlation_id,
            )
        await payments.db.commit()

    async def _expire_if_due(
        self, payments: PaymentRepository, record: PaymentRecord, correlation_id: uuid.UUID
    ) -> PaymentRecord:
        """Persist lazy expiry before deciding whether a record can be replaced."""
        now = self.clock()
        record, _ = await self._apply(
            payments, record, Observation(), now, "expire", correlation_id
        )
        return record

    async def _apply(
        self,
        payments: PaymentRepository,
        record: PaymentRecord,
        observation: Observation,
        now: datetime,
        operation: str,
        correlation_id: uuid.UUID,
        checked: bool = False,
    ) -> Any:
        """Run an observation through the state machine and persist the result."""

        def compute(current: PaymentRecord) -> Optional[Mutation]:
            transition = self.state_machine.apply(
                PaymentSnapshot.from_record(current), observation, now
            )
            values = transition.changed_values()
            if checked and not PaymentStatus(current.status).is_terminal:
                values["last_checked_at"] = now
            return Mutation(values=values, transition=transition)

        record, mutation = await payments.update_with_retry(record, compute, operation)
        transition = mutation.transition if mutation is not None else None
        if mutation is not None and mutation.values:
            self.webhook_handler.emit_transition(payments, record, transition, correlation_id)
        return record, transition

    async def get_status(
        self,
        order_id: str,
        db: AsyncSession,
        method: Optional[Union[PaymentMethod, str]] = None,
        refresh: bool = False,
    ) -> PaymentStatusView:
        """
        Get payment status for an order.

        Non-terminal payments are refreshed from the gateway when the last
        check is older than the refresh interval. If the gateway is
        unreachable the stored status is returned.

        Args:
            order_id: Order to look up
            db: Database session
            method: Optional method the caller expects the payment to use
            refresh: Refresh from the gateway regardless of the interval

        Returns:
            PaymentStatusView: Normalised status

        Raises:
            PaymentNotFound: If the order has no payment
            PaymentValidationError: If the payment uses a different method
        """
        payments = PaymentRepository(db)
        record = await self._get_record(payments, order_id, method)
        correlation_id = uuid.uuid4()
        now = self.clock()

        observation = None
        if self._needs_refresh(record, now, refresh):
            adapter = self.adapters.get(PaymentMethod(record.method))
            if adapter is not None:
                try:
                    remote = await adapter.fetch_status(record)
                    observation = remote.to_observation()
                except (GatewayError, PaymentValidationError) as e:
                    logger.warning(
                        "payment_status_refresh_failed",
                        order_id=order_id,
                        method=record.method,
                        error=str(e),
                    )

        record, _ = await self._apply(
            payments,
            record,
            observation or Observation(),
            now,
            "status_poll",
            correlation_id,
            checked=observation is not None,
        )
        await db.commit()
        return self.status_view(record, now)

    def _needs_refresh(self, record: PaymentRecord, now: datetime, refresh: bool) -> bool:
        if PaymentStatus(record.status).is_terminal:
            return False
        if not record.remote_payment_id and not record.settlement_address:
            # Creation still in flight
            return False
        if refresh or record.last_checked_at is None:
            return True
        age = (now - record.last_checked_at).total_seconds()
        return age >= self.settings.status_refresh_interval_seconds

    async def _get_record(
        self,
        payments: PaymentRepository,
        order_id: str,
        method: Optional[Union[PaymentMethod, str]] = None,
    ) -> PaymentRecord:
        record = await payments.get_by_order_id(order_id)
        if record is None:
            raise PaymentNotFound(f"No payment found for order {order_id}", "Payment not found")
        if method is not None:
            expected = method if isinstance(method, PaymentMethod) else PaymentMethod.parse(method)
            if record.method != expected.value:
                raise PaymentValidationError(
                    f"Order {order_id} is not a {expected.value} payment"
                )
        return record

    def status_view(
        self, record: PaymentRecord, now: Optional[datetime] = None
    ) -> PaymentStatusView:
        """Normalised status view of a record."""
        snapshot = PaymentSnapshot.from_record(record)
        return PaymentStatusView(
            order_id=record.order_id,
            method=snapshot.method,
            status=snapshot.status,
            confirmations=record.confirmations,
            required_confirmations=record.required_confirmations,
            paid_amount=record.paid_amount,
            amount=record.settlement_amount,
            currency=record.settlement_currency,
            is_expired=self.state_machine.is_expired(snapshot, now or self.clock()),
            expiration_time=record.expiration_time,
            transaction_hash=record.transaction_hash,
        )

    async def handle_webhook(
        self,
        method: Union[PaymentMethod, str],
        payload: bytes,
        signature: Optional[str],
        db: AsyncSession,
        remote_addr: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Verify and apply a provider webhook."""
        adapter = self.get_adapter(method)
        return await self.webhook_handler.handle(
            adapter.method, payload, signature, db, remote_addr=remote_addr
        )

    async def capture_wallet_payment(self, order_id: str, db: AsyncSession) -> PaymentStatusView:
        """
        Capture an approved wallet payment.

        Args:
            order_id: Order whose PayPal order the payer approved
            db: Database session

        Returns:
            PaymentStatusView: Status after the capture

        Raises:
            PaymentNotFound: If the order has no payment
            PaymentValidationError: If the payment is not a wallet payment
            InvalidTransition: If the payment is not awaiting capture
            GatewayError: If the capture fails
        """
        payments = PaymentRepository(db)
        record = await self._get_record(payments, order_id, PaymentMethod.WALLET)
        status = PaymentStatus(record.status)
        if status not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
            raise InvalidTransition(f"Cannot capture a payment in status {status.value}")
        if not record.remote_payment_id:
            raise InvalidTransition("Wallet payment has no PayPal order to capture")

        adapter = self.get_adapter(PaymentMethod.WALLET)
        correlation_id = uuid.uuid4()
        remote = await adapter.capture(record)
        now = self.clock()
        record, transition = await self._apply(
            payments, record, remote.to_observation(), now, "capture", correlation_id, checked=True
        )
        payments.record_event(
            record,
            "payment.captured",
            {
                "remote_status": remote.remote_status.value,
                "transaction_hash": remote.transaction_hash,
                "paid_amount": str(remote.paid_amount),
            },
            correlation_id,
        )
        await db.commit()

        logger.info(
            "wallet_payment_captured",
            order_id=order_id,
            status=record.status,
            transaction_hash=record.transaction_hash,
        )
        return self.status_view(record, now)

    async def cancel_payment(
        self,
        order_id: str,
        db: AsyncSession,
        method: Optional[Union[PaymentMethod, str]] = None,
    ) -> PaymentStatusView:
        """
        Cancel a payment nobody has acted on yet.

        Raises:
            PaymentNotFound: If the order has no payment
            InvalidTransition: If the payment is no longer pending
        """
        payments = PaymentRepository(db)
        record = await self._get_record(payments, order_id, method)
        correlation_id = uuid.uuid4()
        now = self.clock()

        def compute(current: PaymentRecord) -> Optional[Mutation]:
            snapshot = PaymentSnapshot.from_record(current)
            if self.state_machine.is_expired(snapshot, now):
                raise InvalidTransition("Cannot cancel an expired payment")
            transition = self.state_machine.cancel(snapshot)
            return Mutation(values=transition.changed_values(), transition=transition)

        record, mutation = await payments.update_with_retry(record, compute, "cancel")
        self.webhook_handler.emit_transition(payments, record, mutation.transition, correlation_id)
        await db.commit()

        logger.info("payment_cancelled", order_id=order_id, method=record.method)
        return self.status_view(record, now)

    async def refund_payment(self, order_id: str, db: AsyncSession) -> Dict[str, Any]:
        """
        Refund a completed payment.

        Only methods whose provider supports refunds qualify; the check
        happens before any provider call.

        Raises:
            PaymentNotFound: If the order has no payment
            RefundNotSupported: If the method has no refunds
            InvalidTransition: If the payment is not completed
            GatewayError: If the provider refund fails
        """
        payments = PaymentRepository(db)
        record = await self._get_record(payments, order_id)
        self.state_machine.refund(PaymentSnapshot.from_record(record))

        adapter = self.get_adapter(record.method)
        correlation_id = uuid.uuid4()
        refund = await adapter.refund(record)

        def compute(current: PaymentRecord) -> Optional[Mutation]:
            snapshot = PaymentSnapshot.from_record(current)
            if snapshot.status == PaymentStatus.REFUNDED:
                # A refund webhook got there first
                return None
            transition = self.state_machine.refund(snapshot)
            return Mutation(values=transition.changed_values(), transition=transition)

        record, mutation = await payments.update_with_retry(record, compute, "refund")
        if mutation is not None:
            self.webhook_handler.emit_transition(
                payments, record, mutation.transition, correlation_id
            )
        payments.record_event(record, "payment.refund_requested", refund, correlation_id)
        await db.commit()

        logger.info(
            "payment_refunded",
            order_id=order_id,
            method=record.method,
            refund_id=refund.get("refund_id"),
        )
        return {"status": self.status_view(record), "refund": refund}

    def _record_creation(self, method: PaymentMethod, outcome: str, start: float) -> None:
        metrics.record_payment_creation(method.value, outcome, time.time() - start)
