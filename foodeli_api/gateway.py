import hashlib
import hmac
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import httpx
from pydantic import BaseModel

from shared.payment_utils import to_major_units, to_minor_units
from shared.utils import GatewayException

logger = logging.getLogger(__name__)


class InitializedTransaction(BaseModel):
    authorization_url: str
    reference: str
    access_code: Optional[str] = None

class VerifiedTransaction(BaseModel):
    success: bool
    amount: Decimal
    reference: str
    provider_reference: Optional[str] = None
    channel: Optional[str] = None
    paid_at: Optional[datetime] = None
    gateway_message: Optional[str] = None
    raw_status: str


def build_reference(order_id: str) -> str:
    # Millisecond suffix keeps retried initializations for one order unique
    return f"order_{order_id}_{int(time.time() * 1000)}"

def parse_paid_at(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed

def parse_transaction(data: dict) -> VerifiedTransaction:
    """Map a provider transaction object (verify response or webhook payload) to our view of it."""
    raw_status = str(data.get("status") or "").strip().lower()
    authorization = data.get("authorization") or {}
    return VerifiedTransaction(
        success=raw_status == "success",
        amount=to_major_units(data.get("amount") or 0),
        reference=str(data.get("reference") or ""),
        provider_reference=str(data["id"]) if data.get("id") is not None else data.get("reference"),
        channel=data.get("channel") or authorization.get("channel"),
        paid_at=parse_paid_at(data.get("paid_at") or data.get("paidAt")),
        gateway_message=data.get("gateway_response"),
        raw_status=raw_status,
    )


class PaystackGateway:
    """Hosted-checkout provider client: initialize, verify, webhook signatures."""

    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
            headers={
                "Authorization": f"Bearer {self.secret_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict:
        async with self._client() as client:
            try:
                response = await client.request(method, path, json=json)
            except httpx.TimeoutException:
                logger.error(f"Payment provider timed out on {path}")
                raise GatewayException("Payment provider timed out")
            except httpx.RequestError as exc:
                logger.error(f"Payment provider unreachable on {path}: {exc}")
                raise GatewayException("Payment provider unavailable")

        try:
            body = response.json()
        except ValueError:
            logger.error(f"Payment provider returned non-JSON ({response.status_code}) on {path}")
            raise GatewayException("Payment provider returned an invalid response")

        if response.status_code >= 400 or not body.get("status"):
            # Provider message is logged, never returned to the caller
            logger.warning(
                f"Payment provider rejected {path}: {response.status_code} {body.get('message')}"
            )
            raise GatewayException("Payment provider rejected the request")
        return body.get("data") or {}

    async def initialize_transaction(
        self,
        email: str,
        amount: Decimal,
        order_id: str,
        callback_url: str,
        metadata: Optional[dict] = None,
    ) -> InitializedTransaction:
        reference = build_reference(order_id)
        payload = {
            "email": email,
            "amount": to_minor_units(amount),
            "reference": reference,
            "callback_url": callback_url,
            "metadata": {"orderId": order_id, **(metadata or {})},
        }
        data = await self._request("POST", "/transaction/initialize", json=payload)

        if not data.get("authorization_url"):
            raise GatewayException("Payment provider returned no checkout URL")

        return InitializedTransaction(
            authorization_url=data["authorization_url"],
            reference=data.get("reference") or reference,
            access_code=data.get("access_code"),
        )

    async def verify_transaction(self, reference: str) -> VerifiedTransaction:
        data = await self._request("GET", f"/transaction/verify/{reference}")
        transaction = parse_transaction(data)
        if not transaction.reference:
            transaction.reference = reference
        return transaction

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        if not signature:
            return False
        computed = hmac.new(self.secret_key.encode("utf-8"), raw_body or b"", hashlib.sha512).hexdigest()
        # bytes comparison: compare_digest rejects non-ASCII str
        return hmac.compare_digest(computed.encode("ascii"), signature.strip().encode("utf-8", "surrogateescape"))
