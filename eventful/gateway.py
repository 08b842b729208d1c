from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, TypedDict
import json
import logging
import time
import uuid

import httpx

from .errors import GatewayError
from .helpers import sign_payload

logger = logging.getLogger(__name__)


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class CheckoutSession(TypedDict):
    checkout_url: str
    reference: str


class PaymentGateway(ABC):
    # shared secret the gateway signs its webhooks with
    secret: str

    @abstractmethod
    async def initialize_checkout(
        self,
        reference: str,
        amount: int,
        email: str,
        callback_url: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CheckoutSession: ...

    @abstractmethod
    async def verify_transaction(self, reference: str) -> Dict[str, Any]: ...


# ----------------------------
# Paystack implementation
# ----------------------------
class PaystackGateway(PaymentGateway):

    def __init__(self, http: httpx.AsyncClient, secret: str,
                 base_url: str = "https://api.paystack.co",
                 timeout: float = 10.0) -> None:
        self.http = http
        self.secret = secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret}",
            "Content-Type": "application/json",
        }

    async def _call(self, method: str, path: str,
                    body: Optional[dict] = None) -> Dict[str, Any]:
        try:
            r = await self.http.request(
                method,
                f"{self.base_url}{path}",
                json=body,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            logger.warning("gateway timeout on %s %s", method, path)
            raise GatewayError("Payment gateway timed out") from e
        except httpx.HTTPError as e:
            logger.warning("gateway unreachable on %s %s: %s",
                           method, path, e)
            raise GatewayError("Payment gateway unreachable") from e

        try:
            doc = r.json()
        except ValueError:
            doc = {}
        if not isinstance(doc, dict):
            logger.warning("gateway sent a non-object body on %s %s",
                           method, path)
            raise GatewayError("Malformed gateway response")
        if r.status_code >= 400 or not doc.get("status"):
            msg = doc.get("message") or f"gateway returned {r.status_code}"
            logger.warning("gateway rejected %s %s: %s", method, path, msg)
            raise GatewayError(msg)
        data = doc.get("data")
        if not isinstance(data, dict):
            raise GatewayError("Malformed gateway response")
        return data

    async def initialize_checkout(
        self,
        reference: str,
        amount: int,
        email: str,
        callback_url: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CheckoutSession:
        data = await self._call("POST", "/transaction/initialize", {
            "email": email,
            "amount": amount,
            "reference": reference,
            "callback_url": callback_url,
            "metadata": metadata or {},
        })
        url = data.get("authorization_url")
        if not url:
            raise GatewayError("Malformed gateway response")
        return {
            "checkout_url": url,
            "reference": data.get("reference") or reference,
        }

    async def verify_transaction(self, reference: str) -> Dict[str, Any]:
        return await self._call("GET", f"/transaction/verify/{reference}")


# ----------------------------
# MockPay implementation (dev)
# ----------------------------
class MockGateway(PaymentGateway):
    """Accepts every checkout and hands out a local payment page URL.
    `signed_event` builds webhook deliveries exactly like the real gateway
    would, so the whole settlement path can be exercised without Paystack."""

    def __init__(self, secret: str, base_url: str = "") -> None:
        self.secret = secret
        self.base_url = base_url.rstrip("/")
        self.sessions: Dict[str, Dict[str, Any]] = {}

    async def initialize_checkout(
        self,
        reference: str,
        amount: int,
        email: str,
        callback_url: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CheckoutSession:
        self.sessions[reference] = {
            "amount": amount,
            "email": email,
            "metadata": metadata or {},
            "status": "pending",
        }
        return {
            "checkout_url": f"{self.base_url}/mockpay/{reference}",
            "reference": reference,
        }

    async def verify_transaction(self, reference: str) -> Dict[str, Any]:
        s = self.sessions.get(reference)
        if s is None:
            raise GatewayError("Transaction reference not found")
        return {"reference": reference, **s}

    def signed_event(self, reference: str, kind: str = "charge.success",
                     status: str = "success",
                     event_id: Optional[str] = None) -> tuple[bytes, str]:
        s = self.sessions.get(reference, {})
        event = {
            "id": event_id or f"evt_{uuid.uuid4().hex}",
            "event": kind,
            "data": {
                "id": int(time.time() * 1000),
                "status": status,
                "reference": reference,
                "amount": s.get("amount", 0),
                "customer": {"email": s.get("email", "")},
                "metadata": s.get("metadata", {}),
            },
        }
        payload = json.dumps(event).encode()
        return payload, sign_payload(self.secret, payload)
