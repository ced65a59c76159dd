from __future__ import annotations

from typing import Dict, List, Optional

from .models.payment import CreditPackage


DEFAULT_CREDIT_PACKAGES: List[CreditPackage] = [
    CreditPackage(id="starter", name="Starter", credits=10, price_eur=5.0),
    CreditPackage(id="basic", name="Basic", credits=25, price_eur=10.0, discount=20),
    CreditPackage(
        id="popular", name="Popular", credits=60, price_eur=20.0, discount=34, badge="popular"
    ),
    CreditPackage(
        id="value", name="Best Value", credits=100, price_eur=30.0, discount=40, badge="value"
    ),
    CreditPackage(
        id="premium", name="Premium", credits=200, price_eur=50.0, discount=50, badge="premium"
    ),
]


class PackageCatalog:
    """Lookup over the credit packages offered at checkout."""

    def __init__(self, packages: Optional[List[CreditPackage]] = None) -> None:
        self._packages: Dict[str, CreditPackage] = {
            p.id: p for p in (packages if packages is not None else DEFAULT_CREDIT_PACKAGES)
        }

    def get(self, package_id: str) -> Optional[CreditPackage]:
        return self._packages.get(package_id)

    def all(self) -> List[CreditPackage]:
        return list(self._packages.values())
