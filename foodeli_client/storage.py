import json
import logging
import time
from typing import Callable, MutableMapping, Optional

from shared.utils import ClientSettings

logger = logging.getLogger("foodeli-client")

ORDER_INFO_KEY = "payment_order_info"
SUCCESS_KEY = "payment_success"
FAILED_KEY = "payment_failed"

PAYMENT_KEYS = (ORDER_INFO_KEY, SUCCESS_KEY, FAILED_KEY)


class PaymentStorage:
    """
    Payment results shared between the checkout page and the callback page.

    `backend` is any string mapping visible to both pages (the browser's
    localStorage in the storefront). Records carry a millisecond timestamp
    and are dropped once older than `ttl_seconds`.
    """

    def __init__(
        self,
        backend: Optional[MutableMapping[str, str]] = None,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend if backend is not None else {}
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    @classmethod
    def from_settings(cls, backend: MutableMapping[str, str], settings: ClientSettings) -> "PaymentStorage":
        return cls(backend, ttl_seconds=settings.STORED_RESULT_TTL_SECONDS)

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _put(self, key: str, record: dict):
        record["timestamp"] = self._now_ms()
        self.backend[key] = json.dumps(record)

    def store_order_info(self, order_id: str, total_amount):
        self._put(ORDER_INFO_KEY, {"orderId": order_id, "totalAmount": str(total_amount)})

    def store_success(self, reference: str, order_completed: bool = False):
        self._put(SUCCESS_KEY, {"reference": reference, "status": "success", "orderCompleted": order_completed})

    def store_failure(self, reference: Optional[str], error: str, status: str = "failed"):
        self._put(FAILED_KEY, {"reference": reference, "status": status, "error": error})

    def get(self, key: str) -> Optional[dict]:
        raw = self.backend.get(key)
        if not raw:
            return None

        try:
            record = json.loads(raw)
            age_ms = self._now_ms() - int(record["timestamp"])
        except (ValueError, KeyError, TypeError):
            logger.warning(f"Discarding unreadable payment record {key}")
            self.backend.pop(key, None)
            return None

        if age_ms > self.ttl_seconds * 1000:
            logger.info(f"Discarding stale payment record {key}")
            self.backend.pop(key, None)
            return None
        return record

    def get_order_info(self) -> Optional[dict]:
        return self.get(ORDER_INFO_KEY)

    def get_success(self) -> Optional[dict]:
        record = self.get(SUCCESS_KEY)
        if record and str(record.get("reference") or "").strip():
            return record
        return None

    def get_failure(self) -> Optional[dict]:
        return self.get(FAILED_KEY)

    def discard_success(self, reference: str):
        """Drop the success record if it belongs to `reference`."""
        record = self.get(SUCCESS_KEY)
        if record and str(record.get("reference") or "").strip() == reference:
            self.backend.pop(SUCCESS_KEY, None)

    def clear(self):
        for key in PAYMENT_KEYS:
            self.backend.pop(key, None)
