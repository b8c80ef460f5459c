"""
Settlement gate.
A period becomes settled once every fixture in it is final and its most recent
finalization is older than the quiet window. Settled is sticky.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from shared.config import Settings, get_settings
from shared.models.domain import PeriodSummary
from shared.utils.logging import get_logger
from shared.utils.metrics import PERIODS_SETTLED
from shared.utils.timeutil import utcnow

from store.gateway import StoreGateway

logger = get_logger(__name__)


def is_eligible(summary: PeriodSummary, now: datetime, quiet_window: timedelta) -> bool:
    if summary.settled:
        return True
    if not summary.all_final or summary.last_finalized_at is None:
        return False
    return summary.last_finalized_at <= now - quiet_window


class SettlementGate:
    def __init__(self, gateway: StoreGateway, settings: Settings | None = None) -> None:
        self._gateway = gateway
        self._settings = settings or get_settings()

    @property
    def quiet_window(self) -> timedelta:
        return timedelta(hours=self._settings.settlement_quiet_window_h)

    async def evaluate(self, now: Optional[datetime] = None) -> list[str]:
        """Check every period; returns the periods settled by this call."""
        now = now or utcnow()
        newly_settled = []
        for summary in await self._gateway.period_summaries():
            if summary.settled:
                continue
            eligible = is_eligible(summary, now, self.quiet_window)
            if await self._gateway.upsert_window(summary.period, summary.last_finalized_at, eligible, now):
                newly_settled.append(summary.period)
                PERIODS_SETTLED.inc()
                logger.info("period_settled", period=summary.period, last_finalized_at=str(summary.last_finalized_at))
        return newly_settled
