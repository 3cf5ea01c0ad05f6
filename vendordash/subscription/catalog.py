"""Loads the purchasable plan catalog from the backend."""

from __future__ import annotations

import logging
from typing import List, Protocol

from .errors import CatalogUnavailable
from .models import Plan

logger = logging.getLogger(__name__)


class PlanSource(Protocol):
    async def get_plans(self) -> List[Plan]:
        ...


class PlanCatalogLoader:
    """Fetches a fresh catalog on every call so prices are current at selection time."""

    def __init__(self, backend: PlanSource) -> None:
        self._backend = backend

    async def list_plans(self) -> List[Plan]:
        """Return plans ordered by duration, shortest first.

        The longest plan is flagged ``popular``. Raises
        :class:`CatalogUnavailable` when the backend fails or offers no plans.
        """

        try:
            plans = await self._backend.get_plans()
        except CatalogUnavailable:
            raise
        except Exception as exc:
            logger.warning({"event": "catalog_unavailable", "reason": str(exc)})
            raise CatalogUnavailable(f"Failed to load subscription plans: {exc}") from exc

        if not plans:
            logger.warning({"event": "catalog_unavailable", "reason": "empty"})
            raise CatalogUnavailable("No subscription plans are available")

        ordered = sorted(plans, key=lambda plan: (plan.duration_days, plan.price, plan.key))
        longest = ordered[-1]
        result = [
            Plan(
                key=plan.key,
                display_name=plan.display_name,
                price=plan.price,
                duration_days=plan.duration_days,
                feature_set=plan.feature_set,
                popular=plan is longest,
            )
            for plan in ordered
        ]
        logger.info({"event": "catalog_loaded", "plans": [plan.key for plan in result]})
        return result

    async def find_plan(self, key: str) -> Plan:
        """Fetch the catalog and return the plan named ``key``."""

        for plan in await self.list_plans():
            if plan.key == key:
                return plan
        raise KeyError(key)
