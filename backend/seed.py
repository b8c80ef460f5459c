"""
Seed script for local runs.

Fetches one week of the ESPN scoreboard and provisions the participants and
fixtures it lists through the store gateway, so the sync jobs have something
to work on. Scores and results are left to the game-status job.

Usage:
    python -m seed --season 2025 --week 1
"""
from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone
from typing import Any

from shared.config import get_settings
from shared.errors import UpstreamUnavailable
from shared.utils.database import DatabaseManager
from shared.utils.http_client import FeedHTTPClient
from shared.utils.logging import get_logger, setup_logging
from shared.utils.timeutil import parse_iso

from store.gateway import StoreGateway

logger = get_logger(__name__)

# ESPN season types: 1 preseason, 2 regular season, 3 postseason
REGULAR_SEASON = 2


def period_label(season: int, week: int) -> str:
    return f"{season}-W{week}"


async def _provision_event(gateway: StoreGateway, period: str, event: dict[str, Any]) -> bool:
    """Upsert both participants and the fixture for one scoreboard event."""
    competition = (event.get("competitions") or [{}])[0]
    sides = {c.get("homeAway"): c for c in competition.get("competitors") or []}
    scheduled_at = parse_iso(event.get("date"))
    if "home" not in sides or "away" not in sides or scheduled_at is None:
        logger.warning("seed_event_skipped", event_id=event.get("id"))
        return False

    team_ids = {}
    for side in ("home", "away"):
        team = sides[side].get("team") or {}
        team_ids[side] = await gateway.upsert_team(
            team.get("displayName") or team.get("name") or f"Team {team.get('id')}",
            external_id=str(team.get("id")),
            abbreviation=team.get("abbreviation"),
        )

    await gateway.upsert_fixture(
        period=period,
        scheduled_at=scheduled_at,
        home_team_id=team_ids["home"],
        away_team_id=team_ids["away"],
        external_id=str(event["id"]) if event.get("id") is not None else None,
    )
    return True


async def seed(season: int, week: int) -> None:
    """Main seed function."""
    settings = get_settings()
    setup_logging("seed", settings=settings)
    db = DatabaseManager(settings)
    await db.connect()
    if settings.is_sqlite:
        await db.create_schema()
    gateway = StoreGateway(db)
    period = period_label(season, week)

    print(f"\n{'='*60}")
    print(f"  Pick'em Seed: {period} at {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M UTC')}")
    print(f"{'='*60}")

    url = f"{settings.espn_site_base_url.rstrip('/')}/{settings.site_league_path}/scoreboard"
    try:
        async with FeedHTTPClient("seed", settings=settings) as client:
            board = await client.get_json(
                url, params={"dates": season, "week": week, "seasontype": REGULAR_SEASON}
            )
    except UpstreamUnavailable as exc:
        print(f"  ! scoreboard unavailable: {exc}")
        await db.disconnect()
        raise SystemExit(1) from exc

    events = board.get("events", [])
    created = 0
    for event in events:
        if await _provision_event(gateway, period, event):
            created += 1

    print(f"  Fixtures provisioned: {created}/{len(events)}")
    print(f"  Teams known: {len(await gateway.list_teams())}")
    print(f"{'='*60}\n")

    await db.disconnect()


def main() -> None:
    parser = argparse.ArgumentParser(description="Provision one week of fixtures from the ESPN scoreboard")
    parser.add_argument("--season", type=int, required=True)
    parser.add_argument("--week", type=int, required=True)
    args = parser.parse_args()
    asyncio.run(seed(args.season, args.week))


if __name__ == "__main__":
    main()
