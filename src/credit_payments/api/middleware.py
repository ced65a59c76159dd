"""
FastAPI/Starlette middleware that charges credits for metered routes.

Flow:
  1. Before request: check the caller's balance covers the route's cost;
     answer 402 otherwise.
  2. Request is executed.
  3. After a successful response: deduct the cost as a USAGE transaction.
  Failed requests (status >= 400) are not charged.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional, Sequence

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..models.payment import CreditOperation
from ..models.transaction import TransactionType
from ..services.credit_service import CreditService


logger = logging.getLogger(__name__)


class CreditChargeMiddleware(BaseHTTPMiddleware):
    """
    Charges a fixed credit cost per matching route.

    `route_costs` maps a path prefix to its cost; the longest matching prefix
    wins. The balance check and the deduction are separate steps, and the
    deduction is conditional, so a request racing another one on the same
    account can finish without being charged. That case is logged.
    """

    def __init__(
        self,
        app: Any,
        credit_service: CreditService,
        *,
        route_costs: Mapping[str, int],
        user_id_header: str = "X-User-Id",
        skip_paths: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(app)
        self.credit_service = credit_service
        self.route_costs = {p.rstrip("/"): c for p, c in route_costs.items()}
        self.user_id_header = user_id_header
        self.skip_paths = tuple(skip_paths or ())

    def _cost_for(self, path: str) -> int:
        for skip in self.skip_paths:
            if path == skip or path.startswith(skip.rstrip("/") + "/"):
                return 0
        matches = [
            prefix
            for prefix in self.route_costs
            if path == prefix or path.startswith(prefix + "/")
        ]
        if not matches:
            return 0
        return self.route_costs[max(matches, key=len)]

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        cost = self._cost_for(request.url.path)
        if cost <= 0:
            return await call_next(request)

        user_id = request.headers.get(self.user_id_header)
        if not user_id:
            return JSONResponse(
                status_code=401,
                content={"detail": "Missing user identification (e.g. X-User-Id header)."},
            )

        check = await self.credit_service.check_sufficient_credits(user_id, cost)
        if not check.sufficient:
            return JSONResponse(
                status_code=402,
                content={
                    "detail": "Insufficient credits for this request.",
                    "code": "INSUFFICIENT_CREDITS",
                    "balance": check.balance,
                    "required": cost,
                },
            )

        response = await call_next(request)
        if response.status_code >= 400:
            return response

        result = await self.credit_service.deduct_credits(
            CreditOperation(
                user_id=user_id,
                amount=cost,
                type=TransactionType.USAGE,
                description=f"{request.method} {request.url.path}",
            )
        )
        if result.success:
            response.headers["X-Credits-Deducted"] = str(cost)
            response.headers["X-Credits-Balance"] = str(result.new_balance)
        else:
            logger.warning(
                "Credit middleware: could not charge %s credits to %s: %s",
                cost,
                user_id,
                result.error,
                extra={"path": request.url.path},
            )
        return response
