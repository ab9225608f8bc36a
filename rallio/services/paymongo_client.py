# rallio/services/paymongo_client.py
"""PayMongo REST client.

Only the two calls the reservation flow needs: create a chargeable e-wallet
source for checkout, and create the payment once the source turns chargeable.
Retries are left to PayMongo's webhook redelivery.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

import httpx

from rallio.core.config import settings
from rallio.errors import GatewayError

logger = logging.getLogger(__name__)

SUPPORTED_SOURCE_TYPES = ("gcash", "grab_pay", "paymaya")


def to_centavos(amount) -> int:
    """Peso amount -> integer centavos, as the gateway expects."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_centavos(amount: Any) -> Decimal:
    return (Decimal(str(amount)) / 100).quantize(Decimal("0.01"))


@dataclass
class GatewaySource:
    id: str
    status: str
    checkout_url: Optional[str] = None


@dataclass
class GatewayCharge:
    id: str
    status: str
    amount: int


def _resource(body: Any, path: str) -> Dict[str, Any]:
    """The `data` object of a 2xx reply; a reply without a resource id is a gateway failure."""
    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, dict) or not data.get("id"):
        logger.error(f"PayMongo {path} replied without a resource id: {str(body)[:500]}")
        raise GatewayError("Payment gateway returned an incomplete response")
    return data


class PayMongoClient:
    """Thin async wrapper around the PayMongo v1 API."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = secret_key if secret_key is not None else settings.PAYMONGO_SECRET_KEY
        self.base_url = (base_url or settings.PAYMONGO_API_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.PAYMONGO_TIMEOUT_SECONDS
        self.transport = transport

    async def _post(self, path: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        """POST `attributes` and return the reply's `data` resource."""
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    url,
                    json={"data": {"attributes": attributes}},
                    auth=(self.secret_key, ""),
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"PayMongo {path} returned {e.response.status_code}: {e.response.text[:500]}")
            raise GatewayError(f"Payment gateway rejected the request ({e.response.status_code})") from e
        except httpx.HTTPError as e:
            logger.error(f"PayMongo {path} request failed: {e}")
            raise GatewayError("Payment gateway unreachable") from e
        except ValueError as e:
            logger.error(f"PayMongo {path} returned a non-JSON body")
            raise GatewayError("Payment gateway returned an unreadable response") from e
        return _resource(body, path)

    async def create_source(
        self,
        amount_centavos: int,
        source_type: str,
        success_url: str,
        failed_url: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewaySource:
        data = await self._post("/sources", {
            "amount": amount_centavos,
            "currency": settings.PAYMENT_CURRENCY,
            "type": source_type,
            "redirect": {"success": success_url, "failed": failed_url},
            "metadata": metadata or {},
        })
        attrs = data.get("attributes") or {}
        source = GatewaySource(
            id=data["id"],
            status=attrs.get("status", "pending"),
            checkout_url=(attrs.get("redirect") or {}).get("checkout_url"),
        )
        logger.info(f"PayMongo source created: {source.id} ({source_type}, {amount_centavos} centavos)")
        return source

    async def create_payment(
        self,
        amount_centavos: int,
        source_id: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewayCharge:
        data = await self._post("/payments", {
            "amount": amount_centavos,
            "currency": settings.PAYMENT_CURRENCY,
            "description": description,
            "source": {"id": source_id, "type": "source"},
            "metadata": metadata or {},
        })
        attrs = data.get("attributes") or {}
        try:
            charged = int(attrs.get("amount", amount_centavos))
        except (TypeError, ValueError) as e:
            logger.error(f"PayMongo payment {data['id']} reported an unreadable amount: {attrs.get('amount')!r}")
            raise GatewayError("Payment gateway returned an incomplete response") from e
        charge = GatewayCharge(
            id=data["id"],
            status=attrs.get("status", "pending"),
            amount=charged,
        )
        logger.info(f"PayMongo payment created: {charge.id} for source {source_id} ({charge.status})")
        return charge


_gateway: Optional[PayMongoClient] = None


def get_gateway() -> PayMongoClient:
    """FastAPI dependency returning the shared client."""
    global _gateway
    if _gateway is None:
        _gateway = PayMongoClient()
    return _gateway
