import asyncio
import logging
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Protocol, Set

from shared.payment_utils import validate_payment_data
from shared.utils import ClientSettings

from foodeli_client.api import ApiError, FoodeliApi, extract_error_message
from foodeli_client.coordinator import (
    CART_PATH, ConfirmationCoordinator, Navigator, Notifier, Severity
)
from foodeli_client.storage import PaymentStorage

logger = logging.getLogger("foodeli-client")

SESSION_EXPIRED_MESSAGE = "Payment session expired. If you completed the payment, please check your orders."


class Popup(Protocol):
    @property
    def closed(self) -> bool:
        ...

    def close(self) -> None:
        ...


class PopupOpener(Protocol):
    def open(self, url: str) -> Optional[Popup]:
        """Returns None when the browser blocks the popup."""
        ...


class PopupMonitor:
    """Polls a checkout popup until it closes. Force-closes it once the session times out."""

    def __init__(
        self,
        popup: Popup,
        on_close: Callable[[], Awaitable[None]],
        on_timeout: Callable[[], None],
        poll_interval: float = 1.0,
        timeout: float = 600.0,
    ):
        self.popup = popup
        self.on_close = on_close
        self.on_timeout = on_timeout
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._task: Optional[asyncio.Task] = None

    def start(self):
        self._task = asyncio.create_task(self._run())

    def cancel(self):
        if self._task is not None and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _wait_closed(self):
        while not self.popup.closed:
            await asyncio.sleep(self.poll_interval)

    async def _run(self):
        try:
            await asyncio.wait_for(self._wait_closed(), timeout=self.timeout)
        except asyncio.TimeoutError:
            if not self.popup.closed:
                self.popup.close()
            self.on_timeout()
            return
        await self.on_close()


class PaymentFlow:
    """
    Checkout driver: create the order, initialize payment, open the hosted
    checkout, then hand every confirmation signal to the coordinator.
    """

    def __init__(
        self,
        api: FoodeliApi,
        coordinator: ConfirmationCoordinator,
        storage: PaymentStorage,
        opener: PopupOpener,
        notifier: Notifier,
        navigator: Navigator,
        settings: Optional[ClientSettings] = None,
    ):
        self.api = api
        self.coordinator = coordinator
        self.storage = storage
        self.opener = opener
        self.notifier = notifier
        self.navigator = navigator
        self.settings = settings or coordinator.settings

        self.loading = False
        self.payment_reference: Optional[str] = None
        self._order_in_flight = False
        self._processing: Set[str] = set()
        self._monitor: Optional[PopupMonitor] = None

        self.coordinator.add_listener(self._on_settled)

    async def checkout(self, order_data: dict, user: dict) -> Optional[str]:
        """Order creation must finish before payment initialization starts."""
        order = await self.create_order(order_data)
        if order is None:
            return None
        return await self.process_payment(order, user)

    async def create_order(self, order_data: dict) -> Optional[dict]:
        if self._order_in_flight:
            logger.info("Order creation already in flight, ignoring repeat submit")
            return None

        self._order_in_flight = True
        payload = {
            "products": order_data["products"],
            "address": order_data["address"],
            "totalAmount": float(order_data["totalAmount"]),
        }
        try:
            response = await self.api.place_order(payload)
        except ApiError as exc:
            self._order_in_flight = False
            logger.warning(f"Order creation failed: {exc}")
            self.notifier.notify(exc.data.get("message") or exc.message or "Failed to create order", Severity.ERROR)
            self.navigator.navigate(CART_PATH)
            return None

        order = response.get("data")
        if not order or not order.get("id"):
            self._order_in_flight = False
            self.notifier.notify("Failed to create order", Severity.ERROR)
            self.navigator.navigate(CART_PATH)
            return None

        logger.info(response.get("message") or "Order created", extra={"order_id": order["id"]})
        return order

    async def process_payment(self, order: dict, user: dict) -> Optional[str]:
        """Returns the payment reference once the hosted checkout is open."""
        order_id = order.get("id")
        if order_id in self._processing:
            logger.info("Order already being processed", extra={"order_id": order_id})
            return None

        self._processing.add(order_id)
        self.loading = True

        try:
            amount = Decimal(str(order.get("total_amount") or 0))
        except ArithmeticError:
            amount = Decimal(0)
        payment = {
            "email": (user.get("email") or "").strip(),
            "amount": float(amount),
            "orderId": order_id,
            "callback_url": self.settings.callback_url,
        }
        errors = validate_payment_data(payment)
        if errors:
            self._fail(order_id, f"Validation errors: {', '.join(errors)}")
            return None

        self.storage.store_order_info(order_id, amount)

        try:
            response = await self.api.initialize_payment(payment)
        except ApiError as exc:
            self._fail(order_id, extract_error_message(exc))
            return None

        data = response.get("data") or {}
        authorization_url = data.get("authorization_url")
        reference = data.get("reference")
        if not authorization_url or not reference:
            self._fail(order_id, "Invalid payment initialization response")
            return None

        self.payment_reference = reference
        popup = self.opener.open(authorization_url)
        if popup is None:
            # Only the callback page can report back in this mode
            logger.info("Popup blocked, redirecting to hosted checkout", extra={"reference": reference})
            self.navigator.redirect(authorization_url)
            return reference

        self.coordinator.start_storage_polling()
        self._monitor = PopupMonitor(
            popup,
            on_close=lambda: self.coordinator.resolve_after_close(reference),
            on_timeout=self._on_timeout,
            poll_interval=self.settings.POPUP_POLL_SECONDS,
            timeout=self.settings.PAYMENT_SESSION_TIMEOUT_SECONDS,
        )
        self._monitor.start()
        return reference

    def _fail(self, order_id: str, message: str):
        logger.warning(f"Payment processing error: {message}", extra={"order_id": order_id})
        self.loading = False
        self._processing.discard(order_id)
        self._order_in_flight = False
        self.notifier.notify(message, Severity.ERROR)

    def _on_timeout(self):
        logger.warning("Payment session timed out", extra={"reference": self.payment_reference})
        self.coordinator.stop_storage_polling()
        self.notifier.notify(SESSION_EXPIRED_MESSAGE, Severity.WARNING)
        self._reset()

    def _on_settled(self, outcome: str, reference: Optional[str]):
        if self.payment_reference and reference and reference != self.payment_reference:
            return
        if self._monitor is not None:
            self._monitor.cancel()
            self._monitor = None
        self._reset()

    def _reset(self):
        self.loading = False
        self._order_in_flight = False
        self._processing.clear()

    async def close(self):
        """Teardown: no timer may outlive the view."""
        if self._monitor is not None:
            self._monitor.cancel()
            self._monitor = None
        self.coordinator.stop_storage_polling()
        self.coordinator.remove_listener(self._on_settled)
        self._reset()
