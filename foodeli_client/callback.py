import logging
from typing import Mapping, Optional, Protocol

from shared.payment_utils import validate_callback_params
from shared.utils import ClientSettings

from foodeli_client.coordinator import (
    CART_PATH, ConfirmationCoordinator, EventType, Navigator, Notifier, Severity
)
from foodeli_client.flow import Popup
from foodeli_client.storage import PaymentStorage

logger = logging.getLogger("foodeli-client")


class OpenerWindow(Protocol):
    def post_message(self, message: dict, target_origin: str) -> None:
        ...


class PaymentCallbackHandler:
    """
    The page the hosted checkout redirects to.

    Opened as a popup it only relays the outcome to its opener (message and
    shared storage record) and closes itself; the opener's coordinator does
    the verification. Opened in the main window it verifies through the
    coordinator directly.
    """

    def __init__(
        self,
        coordinator: ConfirmationCoordinator,
        storage: PaymentStorage,
        notifier: Notifier,
        navigator: Navigator,
        opener: Optional[OpenerWindow] = None,
        window: Optional[Popup] = None,
        settings: Optional[ClientSettings] = None,
    ):
        self.coordinator = coordinator
        self.storage = storage
        self.notifier = notifier
        self.navigator = navigator
        self.opener = opener
        self.window = window
        self.settings = settings or coordinator.settings
        self._handled = False

    async def handle(self, params: Mapping[str, str]) -> str:
        """Returns "relayed", "verified", "failed" or "skipped"."""
        if self._handled:
            logger.info("Payment callback already processed, skipping")
            return "skipped"
        self._handled = True

        reference, status, errors = validate_callback_params(params)
        logger.info(
            "Payment callback received",
            extra={"reference": reference, "channel": "popup" if self.opener else "same-window"},
        )

        if errors:
            self._report_failure(reference, status, "; ".join(errors))
            return "failed"

        if self.opener is not None:
            self.storage.store_success(reference)
            self.opener.post_message(
                {"type": EventType.SUCCESS.value, "reference": reference, "status": "success"},
                self.settings.ORIGIN,
            )
            self._close_window()
            return "relayed"

        order_info = self.storage.get_order_info()
        await self.coordinator.verify(reference, order_info.get("orderId") if order_info else None)
        return "verified"

    def _report_failure(self, reference: Optional[str], status: Optional[str], error: str):
        logger.warning(f"Payment callback failure: {error}", extra={"reference": reference})
        message = f"Payment failed: {error}"

        if self.opener is not None:
            self.storage.store_failure(reference, message, status or "failed")
            self.opener.post_message(
                {"type": EventType.FAILED.value, "reference": reference, "error": message},
                self.settings.ORIGIN,
            )
            self._close_window()
            return

        self.notifier.notify(message, Severity.ERROR)
        self.navigator.navigate(CART_PATH, replace=True)

    def _close_window(self):
        if self.window is not None and not self.window.closed:
            self.window.close()
