"""
JVZoo IPN routes.

The IPN endpoint always answers 200 with a short plain-text body. A non-200
makes JVZoo retry, and retries below the idempotency layer could repeat side
effects such as purchase emails.
"""

import time
from collections.abc import Mapping
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import PlainTextResponse

from app.api.dependencies import get_notifier, get_transaction_processor
from app.config import settings
from app.models.api import (
    IPNOutcome,
    IPNTransactionType,
    JVZooConfigStatusResponse,
    SimulatedTransactionRequest,
    SimulatedTransactionResponse,
)
from app.models.domain import IPN_REQUIRED_FIELDS, IPNNotification
from app.observability.logging import get_logger
from app.services.notifications import PurchaseNotifier, deliver
from app.services.signature import compute_ipn_signature
from app.services.transaction_processor import TransactionProcessor

logger = get_logger(__name__)
router = APIRouter(prefix="/api/jvzoo", tags=["jvzoo"])

MISSING_FIELDS_TEXT = "Missing required fields"
CONFIG_ERROR_TEXT = "Server configuration error"

OUTCOME_TEXT: dict[IPNOutcome, str] = {
    IPNOutcome.PROCESSED: "IPN processed successfully",
    IPNOutcome.IGNORED: "IPN processed successfully",
    IPNOutcome.ALREADY_PROCESSED: "Already processed",
    IPNOutcome.VERIFICATION_FAILED: "Verification failed",
    IPNOutcome.FAILED: "Error logged",
}


async def read_ipn_fields(request: Request) -> dict[str, str]:
    """Posted fields as strings, from a JSON object or a form body."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        payload = await request.json()
        if not isinstance(payload, Mapping):
            return {}
        return {str(k): "" if v is None else str(v) for k, v in payload.items()}
    form = await request.form()
    return {str(k): v if isinstance(v, str) else "" for k, v in form.items()}


@router.post("/ipn", response_class=PlainTextResponse)
async def jvzoo_ipn(
    request: Request,
    processor: TransactionProcessor = Depends(get_transaction_processor),
    notifier: PurchaseNotifier = Depends(get_notifier),
) -> PlainTextResponse:
    """Receive a JVZoo Instant Payment Notification."""
    try:
        fields = await read_ipn_fields(request)
    except Exception as e:
        logger.warning("ipn_body_unreadable", error=str(e))
        fields = {}

    missing = [name for name in IPN_REQUIRED_FIELDS if not fields.get(name, "").strip()]
    if missing:
        logger.warning("ipn_missing_fields", missing=missing)
        return PlainTextResponse(MISSING_FIELDS_TEXT)

    if not settings.jvzoo_secret_key:
        logger.error("ipn_secret_not_configured")
        return PlainTextResponse(CONFIG_ERROR_TEXT)

    notification = IPNNotification.from_fields(fields)
    result = await processor.process(notification)

    if result.notification is not None:
        await deliver(notifier, result.notification)

    return PlainTextResponse(OUTCOME_TEXT[result.outcome])


@router.get("/test", response_model=JVZooConfigStatusResponse)
async def jvzoo_config_status() -> JVZooConfigStatusResponse:
    """Report whether the IPN endpoint is configured (no secrets are returned)."""
    return JVZooConfigStatusResponse(
        configured=bool(settings.jvzoo_secret_key and settings.license_secret),
        secret_key_set=bool(settings.jvzoo_secret_key),
        license_secret_set=bool(settings.license_secret),
        environment=settings.environment,
        ipn_url=settings.ipn_url,
    )


@router.post("/test-transaction", response_model=SimulatedTransactionResponse)
async def jvzoo_test_transaction(
    body: SimulatedTransactionRequest,
    processor: TransactionProcessor = Depends(get_transaction_processor),
    notifier: PurchaseNotifier = Depends(get_notifier),
) -> SimulatedTransactionResponse:
    """
    Sign and process a simulated IPN (disabled in production).

    Follow-up types (refund, rebill) need the receipt of an earlier simulated sale.
    """
    if settings.is_production:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    if not settings.jvzoo_secret_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=CONFIG_ERROR_TEXT
        )
    if body.transaction_type != IPNTransactionType.SALE and not body.receipt:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="receipt is required for non-SALE transactions",
        )

    fields = {
        "ccustname": body.name,
        "ccustemail": body.email,
        "ccustcc": "US",
        "ccuststate": "",
        "cproditem": body.product_code,
        "cprodtitle": "Test Product",
        "cprodtype": "RECURRING" if body.recurring else "STANDARD",
        "ctransaction": body.transaction_type.value,
        "ctransaffiliate": "0",
        "ctransamount": f"{body.amount:.2f}",
        "ctranspaymentmethod": "TEST",
        "ctransreceipt": body.receipt or f"TEST{uuid4().hex[:12].upper()}",
        "ctranstime": str(int(time.time())),
        "ctransvendor": "0",
        "caffitid": "",
        "cupsellreceipt": "",
        "cvendthru": "",
    }
    fields["cverify"] = compute_ipn_signature(fields, settings.jvzoo_secret_key)

    logger.info("ipn_test_transaction", transaction_type=body.transaction_type.value)
    result = await processor.process(IPNNotification.from_fields(fields))
    if result.notification is not None:
        await deliver(notifier, result.notification)

    return SimulatedTransactionResponse(
        outcome=result.outcome,
        idempotency_key=result.idempotency_key,
        license_key=result.license_key,
        error=result.error,
    )
