"""Simulated Revenue Online Service (ROS) VAT3 submission."""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from . import models
from .config import settings
from .vat import VAT3Figures, generate_vat_reference, vat3_figures

logger = logging.getLogger(__name__)


class RevenueSubmissionError(Exception):
    """ROS rejected the return or could not be reached."""
    pass


@dataclass
class RevenueReceipt:
    reference_number: str
    submitted_at: datetime
    figures: VAT3Figures

    def to_dict(self) -> dict[str, Any]:
        return {
            "reference_number": self.reference_number,
            "submitted_at": self.submitted_at.isoformat(),
            "status": "ACCEPTED",
            "figures": self.figures.as_dict(),
        }


class RevenueClient:
    """Builds VAT3 figures and "submits" them.

    ``failure_rate`` of 0 never fails and 1 always fails, so behaviour is
    deterministic at both ends.
    """

    def __init__(
        self,
        failure_rate: float | None = None,
        latency_seconds: float | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.failure_rate = settings.revenue.failure_rate if failure_rate is None else failure_rate
        self.latency_seconds = settings.revenue.latency_seconds if latency_seconds is None else latency_seconds
        self._rng = rng or random.Random()

    async def submit_vat3(self, user: models.User, vat_return: models.VATReturn) -> RevenueReceipt:
        """Submit a return.

        Raises:
            RevenueSubmissionError: When the simulated service rejects the call
        """
        figures = vat3_figures(
            vat_return.sales_vat,
            vat_return.purchase_vat,
            e1=vat_return.goods_to_eu,
            e2=vat_return.goods_from_eu,
            es1=vat_return.services_to_eu,
            es2=vat_return.services_from_eu,
            pa1=vat_return.postponed_accounting,
        )
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)

        if self.failure_rate and self._rng.random() < self.failure_rate:
            logger.warning(f"ROS submission failed for return {vat_return.id}")
            raise RevenueSubmissionError("Revenue Online Service is unavailable, please try again later")

        reference = generate_vat_reference(user.id, vat_return.period_end)
        logger.info(f"ROS accepted return {vat_return.id} with reference {reference}")
        return RevenueReceipt(
            reference_number=reference,
            submitted_at=datetime.now(timezone.utc),
            figures=figures,
        )


def get_revenue_client() -> RevenueClient:
    """Dependency hook; tests override it to force failures."""
    return RevenueClient()
