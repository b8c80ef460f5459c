"""Seeding helpers shared by the store-level tests."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from store.gateway import StoreGateway

KICKOFF = datetime(2025, 9, 7, 17, 0, tzinfo=timezone.utc)


async def seed_matchup(
    gateway: StoreGateway,
    *,
    period: str = "2025-W1",
    scheduled_at: datetime = KICKOFF,
    home: tuple[str, str] = ("Kansas City Chiefs", "12"),
    away: tuple[str, str] = ("Buffalo Bills", "2"),
    is_rivalry: bool = False,
    external_id: str | None = None,
) -> tuple[int, int, int]:
    """Create two teams and a fixture between them; returns (fixture_id, home_id, away_id)."""
    home_id = await gateway.upsert_team(home[0], external_id=home[1])
    away_id = await gateway.upsert_team(away[0], external_id=away[1])
    fixture_id = await gateway.upsert_fixture(
        period=period,
        scheduled_at=scheduled_at,
        home_team_id=home_id,
        away_team_id=away_id,
        is_rivalry=is_rivalry,
        external_id=external_id,
    )
    return fixture_id, home_id, away_id


def hours(n: float) -> timedelta:
    return timedelta(hours=n)
