import logging
from typing import Any, Optional

import httpx

from shared.utils import ClientSettings

logger = logging.getLogger("foodeli-client")


class ApiError(Exception):
    """A failed backend call. status_code is None when the request never got a response."""

    def __init__(self, message: str, status_code: Optional[int] = None, data: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.data = data or {}

    @property
    def is_transient(self) -> bool:
        return self.status_code is None or self.status_code >= 500


def extract_error_message(error: Exception) -> str:
    if isinstance(error, ApiError):
        if error.status_code == 404:
            return "Payment record not found. Please contact support if you were charged."
        if error.status_code == 400:
            return error.data.get("message") or "Payment verification failed"
        if error.status_code is not None:
            return error.data.get("message") or f"Server error ({error.status_code})"
        return "Network error - please check your connection and try again"
    return str(error) or "Payment initialization failed"


class FoodeliApi:
    """Storefront client for the order and payment endpoints."""

    def __init__(
        self,
        token: Optional[str] = None,
        settings: Optional[ClientSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or ClientSettings()
        self.token = token
        self.transport = transport

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict:
        if not self.token:
            raise ApiError("Authentication token not found. Please login again.", status_code=401)

        headers = {"Authorization": f"Bearer {self.token}"}
        async with httpx.AsyncClient(
            base_url=self.settings.API_URL,
            timeout=self.settings.REQUEST_TIMEOUT_SECONDS,
            transport=self.transport,
        ) as client:
            try:
                response = await client.request(method, path, json=json, headers=headers)
            except httpx.RequestError as exc:
                logger.warning(f"{method} {path} failed: {exc}")
                raise ApiError("Network error", status_code=None)

        try:
            body: Any = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.status_code >= 400 or body.get("success") is False:
            raise ApiError(
                body.get("message") or f"Request failed ({response.status_code})",
                status_code=response.status_code,
                data=body,
            )
        return body

    async def place_order(self, order: dict) -> dict:
        return await self._request("POST", "/user/order", json=order)

    async def initialize_payment(self, payment: dict) -> dict:
        return await self._request("POST", "/user/payment/initialize", json=payment)

    async def verify_payment(self, reference: str) -> dict:
        return await self._request("GET", f"/user/payment/verify/{reference}")

    async def complete_order(self, order_id: str) -> dict:
        return await self._request("POST", "/user/order/complete", json={"orderId": order_id})
