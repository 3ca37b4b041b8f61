import json
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Tuple

from foodeli_api.gateway import PaystackGateway, VerifiedTransaction, parse_transaction
from foodeli_api.models import (
    DeliveryStatus, OrderDB, OrderItemDB, PaymentDB, PaymentStatus
)
from foodeli_api.store import OrderStore
from shared.payment_utils import amounts_match
from shared.utils import (
    AmountMismatchException, ForbiddenException, InvalidStateException,
    NotFoundException, PaymentFailedException, Settings, ValidationException
)

logger = logging.getLogger(__name__)

CHARGE_SUCCESS_EVENT = "charge.success"


class OrderService:
    """
    Order and payment state machine.

    payment.status: pending -> success | failed (both terminal)
    order_status:   Pending Payment -> Payment Done -> ... , Pending Payment -> Cancelled
    """

    def __init__(self, store: OrderStore, gateway: PaystackGateway, settings: Settings):
        self.store = store
        self.gateway = gateway
        self.settings = settings

    # --- Orders ---
    async def create_order(
        self, user_id: str, products: List[dict], address: str, total_amount: Decimal
    ) -> Tuple[dict, bool]:
        """Returns (order, created). A matching pending order from the last few minutes is reused."""
        if not products:
            raise ValidationException("Order has no products")
        if total_amount <= 0:
            raise ValidationException("Order total must be positive")

        since = datetime.utcnow() - timedelta(minutes=self.settings.DUPLICATE_ORDER_WINDOW_MINUTES)
        existing = await self.store.find_recent_pending(user_id, float(total_amount), since)
        if existing:
            logger.info(
                "Duplicate order suppressed, reusing pending order",
                extra={"user_id": user_id, "order_id": str(existing["_id"])},
            )
            return existing, False

        order_db = OrderDB(
            user_id=user_id,
            products=[OrderItemDB(**item) for item in products],
            total_amount=total_amount,
            address=address,
            payment=PaymentDB(amount=total_amount),
        )
        order = await self.store.insert(order_db.to_document())
        logger.info("Order created", extra={"user_id": user_id, "order_id": str(order["_id"])})
        return order, True

    async def list_orders(self, user_id: Optional[str] = None) -> List[dict]:
        if user_id is None:
            return await self.store.list_all()
        return await self.store.list_for_user(user_id)

    async def _get_owned_order(self, order_id: str, user_id: str) -> dict:
        order = await self.store.get(order_id)
        if not order:
            raise NotFoundException("Order not found")
        if order["user_id"] != user_id:
            raise ForbiddenException("Not authorized to access this order")
        return order

    # --- Payment initialization ---
    async def initialize_payment(
        self,
        order_id: str,
        user_id: str,
        email: str,
        amount: Decimal,
        callback_url: Optional[str] = None,
    ) -> Tuple[dict, bool]:
        """Returns ({authorization_url, reference, order_id}, created)."""
        order = await self._get_owned_order(order_id, user_id)
        payment = order["payment"]

        if payment["status"] == PaymentStatus.SUCCESS.value:
            raise InvalidStateException("Order is already paid")
        if payment["status"] == PaymentStatus.FAILED.value:
            raise InvalidStateException("Order payment failed; place a new order")

        if payment.get("reference"):
            logger.info(
                "Payment already initialized, reusing reference",
                extra={"order_id": order_id, "reference": payment["reference"]},
            )
            return self._init_result(order), False

        if not amounts_match(amount, order["total_amount"], self.settings.AMOUNT_TOLERANCE):
            raise AmountMismatchException("Payment amount does not match order total")

        transaction = await self.gateway.initialize_transaction(
            email=email,
            amount=Decimal(str(order["total_amount"])),
            order_id=order_id,
            callback_url=callback_url or f"{self.settings.CLIENT_URL.rstrip('/')}/payment/callback",
            metadata={"userId": user_id},
        )

        updated = await self.store.attach_reference(order_id, user_id, {
            "payment.reference": transaction.reference,
            "payment.status": PaymentStatus.PENDING.value,
            "payment.amount": float(order["total_amount"]),
            "payment.authorization_url": transaction.authorization_url,
            "payment.initialized_at": datetime.utcnow(),
        })
        if updated is None:
            # A concurrent initialization attached its reference first
            current = await self._get_owned_order(order_id, user_id)
            logger.warning(
                "Lost initialization race, returning the winning reference",
                extra={"order_id": order_id, "reference": current["payment"].get("reference")},
            )
            return self._init_result(current), False

        logger.info("Payment initialized", extra={"order_id": order_id, "reference": transaction.reference})
        return self._init_result(updated), True

    @staticmethod
    def _init_result(order: dict) -> dict:
        return {
            "authorization_url": order["payment"].get("authorization_url") or "",
            "reference": order["payment"]["reference"],
            "order_id": str(order["_id"]),
        }

    # --- Verification ---
    async def verify_payment(self, reference: str, user_id: str) -> dict:
        order = await self.store.find_by_reference(reference, user_id)
        if not order:
            raise NotFoundException("Payment record not found")

        status = order["payment"]["status"]
        if status == PaymentStatus.SUCCESS.value:
            logger.info("Payment already verified", extra={"reference": reference, "user_id": user_id})
            return order
        if status == PaymentStatus.FAILED.value:
            raise PaymentFailedException()

        transaction = await self.gateway.verify_transaction(reference)

        if not transaction.success:
            await self._finalize_failure(reference, transaction)
            raise PaymentFailedException()

        self._check_amount(order, transaction)
        return await self._finalize_success(order, transaction, channel="verify")

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> str:
        """Returns a short outcome label. Raises ValidationException on a bad signature or body."""
        if not self.gateway.verify_webhook_signature(raw_body, signature):
            logger.warning("Webhook rejected: invalid signature", extra={"channel": "webhook"})
            raise ValidationException("Invalid signature")

        try:
            event = json.loads(raw_body)
        except ValueError:
            raise ValidationException("Invalid webhook payload")
        if not isinstance(event, dict):
            raise ValidationException("Invalid webhook payload")

        event_name = event.get("event")
        if event_name != CHARGE_SUCCESS_EVENT:
            logger.info("Webhook ignored", extra={"event": event_name, "channel": "webhook"})
            return "ignored"

        transaction = parse_transaction(event.get("data") or {})
        order = await self.store.find_by_reference(transaction.reference)
        if not order:
            logger.warning(
                "Webhook for unknown reference",
                extra={"reference": transaction.reference, "event": event_name, "channel": "webhook"},
            )
            return "unknown_reference"

        if not transaction.success:
            await self._finalize_failure(transaction.reference, transaction)
            return "failed"

        if order["payment"]["status"] == PaymentStatus.SUCCESS.value:
            logger.info("Webhook for already verified payment", extra={"reference": transaction.reference})
            return "already_verified"
        if order["payment"]["status"] == PaymentStatus.FAILED.value:
            logger.error(
                "Provider reports success for a payment already marked failed",
                extra={"reference": transaction.reference, "manual_review": True},
            )
            return "already_failed"

        try:
            self._check_amount(order, transaction)
        except AmountMismatchException:
            return "amount_mismatch"

        await self._finalize_success(order, transaction, channel="webhook")
        return "verified"

    def _check_amount(self, order: dict, transaction: VerifiedTransaction):
        if not amounts_match(transaction.amount, order["total_amount"], self.settings.AMOUNT_TOLERANCE):
            logger.error(
                f"Amount mismatch: paid {transaction.amount}, expected {order['total_amount']}",
                extra={
                    "order_id": str(order["_id"]),
                    "reference": transaction.reference,
                    "manual_review": True,
                },
            )
            raise AmountMismatchException()

    async def _finalize_success(self, order: dict, transaction: VerifiedTransaction, channel: str) -> dict:
        reference = order["payment"]["reference"]
        updated = await self.store.mark_payment_success(reference, {
            "payment.external_reference": transaction.provider_reference,
            "payment.method": transaction.channel,
            "payment.paid_at": transaction.paid_at or datetime.utcnow(),
            "payment.gateway_message": transaction.gateway_message,
        })

        if updated is None:
            # Another channel won the transition; report its result
            current = await self.store.find_by_reference(reference)
            if current and current["payment"]["status"] == PaymentStatus.SUCCESS.value:
                logger.info(
                    "Payment confirmed by a concurrent channel",
                    extra={"reference": reference, "channel": channel},
                )
                return current
            raise InvalidStateException("Payment can no longer be confirmed")

        user_id = updated["user_id"]
        await self.store.clear_cart(user_id)

        since = datetime.utcnow() - timedelta(minutes=self.settings.STALE_ORDER_CLEANUP_MINUTES)
        pruned = await self.store.delete_stale_pending(user_id, updated["_id"], since)

        logger.info(
            f"Payment verified, pruned {pruned} stale pending orders",
            extra={"reference": reference, "order_id": str(updated["_id"]), "user_id": user_id, "channel": channel},
        )
        return updated

    async def _finalize_failure(self, reference: str, transaction: VerifiedTransaction):
        updated = await self.store.mark_payment_failed(reference, {
            "payment.gateway_message": transaction.gateway_message,
        })
        if updated is not None:
            logger.warning(
                f"Payment failed with provider status '{transaction.raw_status}'",
                extra={"reference": reference, "order_id": str(updated["_id"])},
            )

    # --- Fulfilment ---
    async def complete_order(self, order_id: str, user_id: str) -> dict:
        order = await self._get_owned_order(order_id, user_id)
        if order["payment"]["status"] != PaymentStatus.SUCCESS.value:
            raise InvalidStateException("Payment not completed")
        if order.get("delivery_status"):
            return order

        updated = await self.store.start_delivery(order_id, user_id, DeliveryStatus.PROCESSING.value)
        if updated is None:
            return await self._get_owned_order(order_id, user_id)

        logger.info("Order moved to fulfilment", extra={"order_id": order_id, "user_id": user_id})
        return updated

    async def update_delivery_status(self, order_id: str, delivery_status: DeliveryStatus) -> dict:
        value = DeliveryStatus(delivery_status).value
        order = await self.store.set_delivery_status(order_id, value)
        if not order:
            raise NotFoundException("Order not found")
        logger.info(f"Delivery status updated to {value}", extra={"order_id": order_id})
        return order
