"""
ASGI entry point.

Run:
  uvicorn credit_payments.main:app --reload
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Mapping, Optional

from fastapi import FastAPI

from .api.middleware import CreditChargeMiddleware
from .api.router import PaymentServices, build_services, create_payments_router
from .config import Settings, settings
from .db.mongo import MongoDBManager
from .gateways.paypal_gateway import PayPalGateway

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(
    services: Optional[PaymentServices] = None,
    app_settings: Optional[Settings] = None,
    route_costs: Optional[Mapping[str, int]] = None,
) -> FastAPI:
    """
    Build the application. `route_costs` maps path prefixes of the host's
    metered endpoints to the credits each successful call costs.
    """
    app_settings = app_settings or settings
    services = services or build_services(app_settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if isinstance(services.db, MongoDBManager):
            await services.db.ensure_indexes()
        logger.info("Payment providers registered: %s", ", ".join(services.gateways.names()))
        yield
        paypal = services.gateways.get("paypal")
        if isinstance(paypal, PayPalGateway):
            await paypal.aclose()

    app = FastAPI(title="Credit payments", lifespan=lifespan)
    app.state.services = services
    if route_costs:
        app.add_middleware(
            CreditChargeMiddleware, credit_service=services.credits, route_costs=route_costs
        )
    app.include_router(create_payments_router(services))
    return app


configure_logging(settings.LOG_LEVEL)
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("credit_payments.main:app", host="0.0.0.0", port=8000)
