"""
services/payment/gateway.py
Chapa payment gateway adapter.

Only the three calls the core needs: initialize a checkout, verify a
transaction, and (via the router) accept webhook pushes. Every network
problem is reported as GatewayUnavailable so the reconciler can decide
whether to fall back; a 4xx answer is an explicit failure, not an outage.
"""

import logging
from decimal import Decimal
from typing import Optional

import httpx
from pybreaker import CircuitBreaker, CircuitBreakerError
from pydantic import BaseModel

from config.settings import settings
from shared.exceptions import GatewayUnavailable

logger = logging.getLogger(__name__)


class CheckoutSession(BaseModel):
    checkout_url: str
    tx_ref: str


class GatewayVerification(BaseModel):
    success: bool
    status: str
    tx_ref: str
    reference: Optional[str] = None
    method: Optional[str] = None
    amount: Optional[Decimal] = None
    message: Optional[str] = None


class GatewayDeclined(Exception):
    """The gateway answered but refused the request (4xx)."""

    def __init__(self, message: str, status_code: int):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


def build_breaker() -> CircuitBreaker:
    return CircuitBreaker(
        fail_max=settings.PAYMENT_GATEWAY_FAIL_MAX,        # Open after N outages
        reset_timeout=settings.PAYMENT_GATEWAY_RESET_TIMEOUT,
        exclude=[GatewayDeclined],                         # 4xx is not an outage
        name="chapa",
    )


class ChapaGateway:
    """Async client for the Chapa REST API."""

    def __init__(
        self,
        secret_key: str = None,
        base_url: str = None,
        timeout: float = None,
        breaker: CircuitBreaker = None,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.secret_key = secret_key if secret_key is not None else settings.CHAPA_SECRET_KEY
        self.base_url = (base_url or settings.CHAPA_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS
        self.breaker = breaker or build_breaker()
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key and settings.APP_URL)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout),
            headers={"Authorization": f"Bearer {self.secret_key}"},
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        """
        Perform one HTTP call under the circuit breaker.
        Raises GatewayUnavailable for transport errors, timeouts, 5xx and an
        open breaker; GatewayDeclined for 4xx.
        """
        try:
            with self.breaker.calling():
                try:
                    async with self._client() as client:
                        response = await client.request(method, path, **kwargs)
                except httpx.TimeoutException as exc:
                    raise GatewayUnavailable("Payment gateway timed out") from exc
                except httpx.TransportError as exc:
                    raise GatewayUnavailable("Payment gateway unreachable") from exc

                if response.status_code >= 500:
                    raise GatewayUnavailable(
                        "Payment gateway error",
                        details={"gateway_status": response.status_code},
                    )
                if response.status_code >= 400:
                    raise GatewayDeclined(_error_message(response), response.status_code)
                return response.json()
        except CircuitBreakerError as exc:
            logger.warning(f"Payment gateway circuit open: {exc}")
            raise GatewayUnavailable("Payment gateway temporarily unavailable") from exc

    # ── Operations ────────────────────────────────────────────

    async def initialize(
        self,
        tx_ref: str,
        amount: Decimal,
        currency: str,
        email: str,
        first_name: str,
        return_url: str,
        last_name: str = "",
        phone_number: Optional[str] = None,
        description: Optional[str] = None,
    ) -> CheckoutSession:
        payload = {
            "amount": str(amount),
            "currency": currency,
            "email": email,
            "first_name": first_name,
            "last_name": last_name,
            "tx_ref": tx_ref,
            "callback_url": f"{settings.APP_URL}/payments/webhook",
            "return_url": return_url,
            "customization": {
                "title": "Tour Booking",
                "description": description or "Tour booking payment",
            },
        }
        if phone_number:
            payload["phone_number"] = phone_number

        try:
            body = await self._request("POST", "/transaction/initialize", json=payload)
        except GatewayDeclined as exc:
            # A refused checkout leaves nothing to reconcile; treat as unavailable.
            raise GatewayUnavailable(
                f"Payment gateway rejected initialization: {exc.message}",
                details={"gateway_status": exc.status_code},
            ) from exc

        checkout_url = (body.get("data") or {}).get("checkout_url")
        if body.get("status") != "success" or not checkout_url:
            raise GatewayUnavailable(body.get("message") or "Failed to initialize payment")
        return CheckoutSession(checkout_url=checkout_url, tx_ref=tx_ref)

    async def verify(self, tx_ref: str) -> GatewayVerification:
        try:
            body = await self._request("GET", f"/transaction/verify/{tx_ref}")
        except GatewayDeclined as exc:
            return GatewayVerification(
                success=False, status="failed", tx_ref=tx_ref, message=exc.message
            )

        data = body.get("data") or {}
        status = str(data.get("status") or body.get("status") or "unknown").lower()
        amount = data.get("amount")
        return GatewayVerification(
            success=body.get("status") == "success" and status == "success",
            status=status,
            tx_ref=tx_ref,
            reference=data.get("reference"),
            method=data.get("method"),
            amount=Decimal(str(amount)) if amount is not None else None,
            message=body.get("message"),
        )


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json().get("message") or response.reason_phrase
    except ValueError:
        return response.reason_phrase
