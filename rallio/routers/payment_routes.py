# rallio/routers/payment_routes.py
"""
PayMongo webhook endpoint.

Any non-2xx response makes PayMongo redeliver, which the reconciler tolerates.
"""
import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from rallio.core.config import settings
from rallio.database.database import get_db
from rallio.errors import NotAuthenticated, ReservationIntegrityError
from rallio.services.payment_service import handle_webhook
from rallio.services.paymongo_client import PayMongoClient, get_gateway
from rallio.services.webhook_signature import SIGNATURE_HEADER, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Payments"])


def _check_signature(raw_body: bytes, header) -> None:
    secret = settings.PAYMONGO_WEBHOOK_SECRET
    if not secret:
        if settings.is_production:
            logger.error("Webhook rejected: PAYMONGO_WEBHOOK_SECRET missing in production")
            raise NotAuthenticated("Invalid signature")
        logger.warning("⚠ PAYMONGO_WEBHOOK_SECRET not set; accepting unsigned webhook (development only)")
        return
    if not verify_signature(raw_body, header, secret):
        logger.warning(f"Webhook rejected: invalid or missing {SIGNATURE_HEADER} header")
        raise NotAuthenticated("Invalid signature")


@router.post("/payment")
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PayMongoClient = Depends(get_gateway),
):
    raw_body = await request.body()
    _check_signature(raw_body, request.headers.get(SIGNATURE_HEADER))

    try:
        body = json.loads(raw_body or b"{}")
    except ValueError:
        logger.warning("Webhook body is not valid JSON")
        return JSONResponse(status_code=400, content={"received": False, "error": "invalid_payload"})

    try:
        outcome = await handle_webhook(db, body, gateway)
    except ValueError as e:
        logger.warning(f"Malformed webhook event: {e}")
        return JSONResponse(status_code=400, content={"received": False, "error": "invalid_payload"})
    except ReservationIntegrityError:
        # already logged as critical; 500 so the gateway redelivers
        raise
    except Exception as e:
        logger.error(f"Webhook processing failed: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"received": False, "error": "processing_failed"})

    return {"received": True, **outcome.to_dict()}
