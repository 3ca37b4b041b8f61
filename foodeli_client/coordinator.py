"""
Payment confirmation coordinator.

A checkout learns about its payment outcome from several unreliable
channels that may fire in any order and more than once:

- the callback page posting a message to its opener window,
- the callback page writing a result record to shared storage,
- the checkout page noticing the popup has closed,
- the callback page itself when it was opened in the same window.

Every channel is normalized to a PaymentEvent and pushed onto one queue.
A single dispatcher task consumes it, so each reference is verified with
the backend at most once per page lifetime. One coordinator is built per
page and handed to every view that needs it.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional, Protocol, Set

from shared.payment_utils import is_valid_payment_message, retry_operation
from shared.utils import ClientSettings

from foodeli_client.api import ApiError, FoodeliApi, extract_error_message
from foodeli_client.storage import PaymentStorage

logger = logging.getLogger("foodeli-client")

SUCCESS_MESSAGE = "Payment successful! Your order has been placed."
FAILED_MESSAGE = "Payment failed. Please try again."
CLOSED_MESSAGE = "Payment window was closed. If you completed the payment, please check your orders."
INVALID_REFERENCE_MESSAGE = "Invalid payment reference. Please contact support."

ORDERS_PATH = "/orders"
CART_PATH = "/cart"


class EventType(str, Enum):
    SUCCESS = "PAYMENT_SUCCESS"
    FAILED = "PAYMENT_FAILED"
    CLOSED = "PAYMENT_CLOSED"


class Severity(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class PaymentEvent:
    type: EventType
    reference: Optional[str] = None
    error: Optional[str] = None
    channel: str = "message"

    @property
    def key(self) -> str:
        return f"{self.type.value}-{self.reference}"

    @classmethod
    def from_message(cls, data: Any) -> Optional["PaymentEvent"]:
        if not is_valid_payment_message(data):
            return None
        try:
            event_type = EventType(data["type"])
        except ValueError:
            return None
        reference = str(data.get("reference") or "").strip() or None
        return cls(type=event_type, reference=reference, error=data.get("error"), channel="message")


class Notifier(Protocol):
    def notify(self, message: str, severity: Severity) -> None:
        ...


class Navigator(Protocol):
    def navigate(self, path: str, replace: bool = False) -> None:
        ...

    def redirect(self, url: str) -> None:
        ...


# outcome ("success" | "failed" | "closed"), reference
SettleListener = Callable[[str, Optional[str]], None]


def _is_transient(error: Exception) -> bool:
    return isinstance(error, ApiError) and error.is_transient


class ConfirmationCoordinator:
    def __init__(
        self,
        api: FoodeliApi,
        storage: PaymentStorage,
        notifier: Notifier,
        navigator: Navigator,
        settings: Optional[ClientSettings] = None,
    ):
        self.api = api
        self.storage = storage
        self.notifier = notifier
        self.navigator = navigator
        self.settings = settings or ClientSettings()

        self.verified: Set[str] = set()
        self.in_progress: Set[str] = set()

        self._queue: Optional[asyncio.Queue] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._debounce: Optional[asyncio.TimerHandle] = None
        self._last_message_key: Optional[str] = None
        self._storage_poller: Optional[asyncio.Task] = None
        self._listeners: List[SettleListener] = []

    # --- Lifecycle ---
    def start(self):
        if self._dispatcher is None or self._dispatcher.done():
            self._queue = asyncio.Queue()
            self._dispatcher = asyncio.create_task(self._dispatch())

    async def close(self):
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None
        self.stop_storage_polling()
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None

    def add_listener(self, listener: SettleListener):
        self._listeners.append(listener)

    def remove_listener(self, listener: SettleListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _settle(self, outcome: str, reference: Optional[str]):
        self.stop_storage_polling()
        for listener in list(self._listeners):
            listener(outcome, reference)

    # --- Queue ---
    def submit(self, event: PaymentEvent):
        self.start()
        logger.info(
            f"Payment event {event.type.value}",
            extra={"reference": event.reference, "channel": event.channel},
        )
        self._queue.put_nowait(event)

    async def drain(self):
        """Wait until every queued event has been handled."""
        if self._queue is not None:
            await self._queue.join()

    async def _dispatch(self):
        while True:
            event = await self._queue.get()
            try:
                await self._handle(event)
            except Exception:
                logger.error(
                    "Error processing payment result",
                    exc_info=True,
                    extra={"reference": event.reference, "channel": event.channel},
                )
                self.notifier.notify(
                    "Error processing payment result. Please check your orders or contact support.",
                    Severity.ERROR,
                )
            finally:
                self._queue.task_done()

    async def _handle(self, event: PaymentEvent):
        if event.type is EventType.SUCCESS:
            await self.verify(event.reference)
            return

        if event.reference and (event.reference in self.verified or event.reference in self.in_progress):
            logger.info(
                f"Ignoring {event.type.value}, payment already confirmed",
                extra={"reference": event.reference, "channel": event.channel},
            )
            return

        if event.type is EventType.FAILED:
            self.notifier.notify(event.error or FAILED_MESSAGE, Severity.ERROR)
            outcome = "failed"
        else:
            self.notifier.notify(CLOSED_MESSAGE, Severity.WARNING)
            outcome = "closed"

        self.storage.clear()
        self.navigator.navigate(CART_PATH, replace=True)
        self._settle(outcome, event.reference)

    # --- Verification ---
    async def verify(self, reference: Optional[str], order_id: Optional[str] = None):
        reference = (reference or "").strip()
        if not reference:
            logger.error("Invalid payment reference")
            self.notifier.notify(INVALID_REFERENCE_MESSAGE, Severity.ERROR)
            return

        if reference in self.verified:
            logger.info("Payment already verified", extra={"reference": reference})
            return
        if reference in self.in_progress:
            logger.info("Payment verification already in progress", extra={"reference": reference})
            return

        self.in_progress.add(reference)
        try:
            await retry_operation(
                lambda: self.api.verify_payment(reference),
                max_retries=self.settings.VERIFY_MAX_ATTEMPTS,
                delay=self.settings.VERIFY_RETRY_DELAY_SECONDS,
                should_retry=_is_transient,
            )
            self.verified.add(reference)

            if order_id is None:
                order_info = self.storage.get_order_info()
                order_id = order_info.get("orderId") if order_info else None
            if order_id:
                try:
                    await self.api.complete_order(order_id)
                except ApiError as exc:
                    logger.warning(
                        f"Order completion failed, but payment was successful: {exc}",
                        extra={"reference": reference, "order_id": order_id},
                    )

            logger.info("Payment verified", extra={"reference": reference, "order_id": order_id})
            self.notifier.notify(SUCCESS_MESSAGE, Severity.SUCCESS)
            self.storage.clear()
            self.navigator.navigate(ORDERS_PATH, replace=True)
            self._settle("success", reference)
        except ApiError as exc:
            logger.warning(f"Payment verification failed: {exc}", extra={"reference": reference})
            if not exc.is_transient:
                # rejected by the backend; a later storage check must not verify it again
                self.storage.discard_success(reference)
            self.notifier.notify(extract_error_message(exc), Severity.ERROR)
            self.navigator.navigate(CART_PATH, replace=True)
            self._settle("failed", reference)
        finally:
            self.in_progress.discard(reference)

    # --- Channel: window messages ---
    def handle_message(self, data: Any):
        """Entry point for messages posted to this window. Must run on the event loop."""
        event = PaymentEvent.from_message(data)
        if event is None:
            return

        if event.key == self._last_message_key:
            logger.info(f"Duplicate message ignored: {event.key}", extra={"channel": "message"})
            return

        if self._debounce is not None:
            self._debounce.cancel()
        loop = asyncio.get_running_loop()
        self._debounce = loop.call_later(self.settings.MESSAGE_DEBOUNCE_SECONDS, self._release_message, event)

    def _release_message(self, event: PaymentEvent):
        self._debounce = None
        self._last_message_key = event.key
        self.submit(event)

    # --- Channel: shared storage ---
    def check_storage(self, channel: str = "storage") -> bool:
        success = self.storage.get_success()
        if success:
            self.submit(PaymentEvent(EventType.SUCCESS, success["reference"].strip(), channel=channel))
            return True

        failure = self.storage.get_failure()
        if failure:
            self.submit(PaymentEvent(EventType.FAILED, failure.get("reference"), failure.get("error"), channel))
            return True
        return False

    def start_storage_polling(self):
        if self._storage_poller is not None and not self._storage_poller.done():
            return
        self._storage_poller = asyncio.create_task(self._poll_storage())

    def stop_storage_polling(self):
        poller = self._storage_poller
        self._storage_poller = None
        if poller is not None and not poller.done() and poller is not asyncio.current_task():
            poller.cancel()

    @property
    def polling(self) -> bool:
        return self._storage_poller is not None and not self._storage_poller.done()

    async def _poll_storage(self):
        while True:
            await asyncio.sleep(self.settings.STORAGE_POLL_SECONDS)
            if self.check_storage():
                return

    # --- Channel: popup closed ---
    async def resolve_after_close(self, reference: Optional[str] = None):
        """Popup closed: give in-flight messages a moment, then read storage or report the close."""
        await asyncio.sleep(self.settings.POPUP_CLOSE_GRACE_SECONDS)
        if not self.check_storage(channel="popup-closed"):
            self.submit(PaymentEvent(EventType.CLOSED, reference, channel="popup-closed"))
