from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..cache.memory import InMemoryAsyncCache
from ..catalog import PackageCatalog
from ..config import Settings
from ..db.base import BaseDBManager
from ..db.memory import InMemoryDBManager
from ..db.mongo import MongoDBManager
from ..gateways.base import GatewayRegistry
from ..gateways.paypal_gateway import PayPalGateway
from ..gateways.stripe_gateway import StripeGateway
from ..logging.ledger_logger import LedgerLogger
from ..models.payment import CreditPackage, ErrorCode, RevenueSummary
from ..models.transaction import TransactionType
from ..notifications.queue import InMemoryNotificationQueue
from ..services.capture_service import CaptureService
from ..services.checkout_service import CheckoutService
from ..services.credit_service import CreditService
from ..services.idempotency_service import IdempotencyState, IdempotencyService
from ..services.notification_service import NotificationService
from ..services.reporting_service import ReportingService
from ..services.webhook_service import WebhookService

logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    ErrorCode.PROVIDER_NOT_CONFIGURED: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.CAPTURE_FAILED: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_PACKAGE: status.HTTP_400_BAD_REQUEST,
    ErrorCode.USER_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class CheckoutRequest(BaseModel):
    package_id: str
    provider: str = "stripe"


class CaptureRequest(BaseModel):
    order_id: str
    provider: str = "paypal"


class CreditBalanceResponse(BaseModel):
    user_id: str
    credits: int


class TransactionResponse(BaseModel):
    id: str
    type: str
    amount: int
    description: Optional[str] = None
    payment_provider: Optional[str] = None
    payment_status: Optional[str] = None
    payment_amount: Optional[float] = None
    currency: Optional[str] = None
    created_at: str


class HistoryResponse(BaseModel):
    transactions: List[TransactionResponse]
    total: int


class PaymentServices:
    """Wiring of stores, gateways and use cases shared by the routes."""

    def __init__(
        self,
        db: BaseDBManager,
        gateways: GatewayRegistry,
        ledger: LedgerLogger,
        frontend_url: str = "http://localhost:3000",
        catalog: Optional[PackageCatalog] = None,
    ) -> None:
        self.db = db
        self.gateways = gateways
        self.ledger = ledger
        self.frontend_url = frontend_url
        self.queue = InMemoryNotificationQueue()
        self.notifications = NotificationService(db=db, queue=self.queue)
        self.credits = CreditService(db=db, ledger=ledger, notifications=self.notifications)
        self.capture = CaptureService(db=db, credit_service=self.credits, gateways=gateways)
        self.webhooks = WebhookService(db=db, credit_service=self.credits, gateways=gateways)
        self.checkout = CheckoutService(
            db=db, credit_service=self.credits, gateways=gateways, ledger=ledger, catalog=catalog
        )
        self.idempotency = IdempotencyService(cache=InMemoryAsyncCache())
        self.reporting = ReportingService(db=db)


def _create_db_manager(settings: Settings) -> BaseDBManager:
    if settings.MONGO_URI:
        return MongoDBManager.from_client_uri(settings.MONGO_URI, settings.MONGO_DB)
    logger.warning("MONGO_URI not set; using the in-memory store")
    return InMemoryDBManager()


def create_gateways(settings: Settings) -> GatewayRegistry:
    registry = GatewayRegistry(
        [
            StripeGateway(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_SECRET),
            PayPalGateway(
                settings.PAYPAL_CLIENT_ID,
                settings.PAYPAL_CLIENT_SECRET,
                settings.PAYPAL_WEBHOOK_ID,
                live=settings.PAYPAL_LIVE,
                timeout=settings.PAYPAL_TIMEOUT_SECONDS,
            ),
        ]
    )
    if settings.STRIPE_LINK_ENABLED:
        registry.register(
            StripeGateway(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_SECRET, use_link=True)
        )
    return registry


def build_services(settings: Settings) -> PaymentServices:
    db = _create_db_manager(settings)
    ledger = LedgerLogger(db=db, file_path=Path(settings.LEDGER_LOG_PATH))
    return PaymentServices(
        db=db,
        gateways=create_gateways(settings),
        ledger=ledger,
        frontend_url=settings.FRONTEND_URL,
    )


def _error_response(result: BaseModel, error_code: Optional[ErrorCode]) -> JSONResponse:
    code = _ERROR_STATUS.get(error_code, status.HTTP_400_BAD_REQUEST) if error_code else 400
    return JSONResponse(status_code=code, content=result.model_dump(mode="json", exclude_none=True))


def create_payments_router(services: PaymentServices) -> APIRouter:
    """
    Routes for the payment flows. The caller's identity arrives in the
    X-User-Id header; authenticating it is the host application's job.
    """
    router = APIRouter()

    @router.get("/payments/packages", response_model=List[CreditPackage], tags=["payments"])
    async def list_packages() -> List[CreditPackage]:
        return services.checkout.list_packages()

    @router.post("/payments/checkout", tags=["payments"])
    async def create_checkout(
        payload: CheckoutRequest, user_id: str = Header(alias="X-User-Id")
    ) -> Any:
        result = await services.checkout.create_checkout(
            user_id=user_id,
            package_id=payload.package_id,
            provider=payload.provider,
            frontend_url=services.frontend_url,
        )
        if not result.success:
            return _error_response(result, result.error_code)
        return result.model_dump(mode="json", exclude_none=True)

    @router.get("/payments/verify/{provider}/{session_id}", tags=["payments"])
    async def verify_payment(
        provider: str, session_id: str, user_id: str = Header(alias="X-User-Id")
    ) -> Any:
        result = await services.checkout.verify_payment(user_id, provider, session_id)
        if not result.success:
            return _error_response(result, result.error_code)
        return result.model_dump(mode="json", exclude_none=True)

    @router.post("/payments/capture", tags=["payments"])
    async def capture_payment(
        payload: CaptureRequest,
        user_id: str = Header(alias="X-User-Id"),
        idempotency_key: Optional[str] = Header(default=None, alias="X-Idempotency-Key"),
    ) -> Any:
        key = f"{user_id}:{idempotency_key}" if idempotency_key else None
        if key is not None:
            existing = await services.idempotency.begin(key, "capture", user_id)
            if existing is not None:
                if existing.state == IdempotencyState.PENDING:
                    raise HTTPException(
                        status_code=status.HTTP_409_CONFLICT,
                        detail="Request with this idempotency key is in progress",
                    )
                return JSONResponse(
                    status_code=existing.status_code or status.HTTP_200_OK,
                    content=existing.result,
                    headers={"X-Idempotent-Replay": "true"},
                )

        result = await services.capture.capture(user_id, payload.order_id, payload.provider)
        body = result.model_dump(mode="json", exclude_none=True)
        if not result.success:
            if key is not None:
                await services.idempotency.fail(key)
            return _error_response(result, result.error_code)
        if key is not None:
            await services.idempotency.complete(key, body, status.HTTP_200_OK)
        return body

    @router.get("/payments/balance", response_model=CreditBalanceResponse, tags=["payments"])
    async def get_balance(user_id: str = Header(alias="X-User-Id")) -> CreditBalanceResponse:
        balance = await services.credits.get_balance(user_id)
        if balance is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        return CreditBalanceResponse(user_id=user_id, credits=balance)

    @router.get("/payments/history", response_model=HistoryResponse, tags=["payments"])
    async def get_history(
        user_id: str = Header(alias="X-User-Id"),
        limit: int = Query(default=50, ge=1, le=200),
        offset: int = Query(default=0, ge=0),
        type: Optional[TransactionType] = None,
    ) -> HistoryResponse:
        rows, total = await services.credits.get_credit_history(
            user_id, limit=limit, offset=offset, type=type
        )
        return HistoryResponse(
            transactions=[
                TransactionResponse(
                    id=tx.id or "",
                    type=tx.type.value,
                    amount=tx.amount,
                    description=tx.description,
                    payment_provider=tx.payment_provider.value if tx.payment_provider else None,
                    payment_status=tx.payment_status.value if tx.payment_status else None,
                    payment_amount=tx.payment_amount,
                    currency=tx.currency,
                    created_at=tx.created_at.isoformat(),
                )
                for tx in rows
            ],
            total=total,
        )

    @router.get("/payments/revenue", response_model=RevenueSummary, tags=["reporting"])
    async def revenue() -> RevenueSummary:
        return await services.reporting.revenue_summary()

    @router.post("/webhooks/{provider}", tags=["webhooks"])
    async def receive_webhook(provider: str, request: Request) -> Any:
        payload = await request.body()
        headers: Dict[str, str] = dict(request.headers)
        signature = headers.get("stripe-signature") or headers.get("paypal-transmission-sig") or ""
        result = await services.webhooks.process(provider, payload, signature, headers)
        body = result.model_dump(mode="json", exclude_none=True)
        if not result.success:
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=body)
        return {"received": True, **body}

    return router
