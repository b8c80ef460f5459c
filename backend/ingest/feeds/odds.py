"""
Betting odds feed (The Odds API).

One request per run returns every upcoming event with its bookmakers. The
first bookmaker listed for an event is used as-is; lines are never averaged
across providers. Only non-final fixtures are written, and only when the
snapshot is strictly newer than what is stored.
"""
from __future__ import annotations

import re
from typing import Any, Optional, Sequence

from shared.errors import ConfigurationError, MappingFailure, SchemaMismatch
from shared.models.domain import FixtureView, OddsSnapshot
from shared.models.enums import FeedType
from shared.utils.logging import get_logger
from shared.utils.timeutil import parse_iso, utcnow

from ingest.feeds.base import BaseFeedAdapter, FeedResult

logger = get_logger(__name__)

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def name_key(name: str) -> str:
    return _NON_ALNUM.sub("", (name or "").lower())


def nickname_key(name: str) -> str:
    parts = (name or "").split()
    return name_key(parts[-1]) if parts else ""


def _market(bookmaker: dict[str, Any], key: str) -> list[dict[str, Any]]:
    for market in bookmaker.get("markets") or []:
        if market.get("key") == key:
            return market.get("outcomes") or []
    return []


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def match_fixture(snapshot: OddsSnapshot, fixtures: Sequence[FixtureView]) -> Optional[FixtureView]:
    """Prefer an external-id match; fall back to participant names, then nicknames."""
    if snapshot.external_id:
        for fixture in fixtures:
            if fixture.external_id and fixture.external_id == snapshot.external_id:
                return fixture

    home, away = name_key(snapshot.home_team_name), name_key(snapshot.away_team_name)
    for fixture in fixtures:
        if name_key(fixture.home_team_name) == home and name_key(fixture.away_team_name) == away:
            return fixture

    home, away = nickname_key(snapshot.home_team_name), nickname_key(snapshot.away_team_name)
    candidates = [
        f for f in fixtures
        if nickname_key(f.home_team_name) == home and nickname_key(f.away_team_name) == away
    ]
    return candidates[0] if len(candidates) == 1 else None


class OddsFeed(BaseFeedAdapter[OddsSnapshot]):
    feed_type = FeedType.ODDS

    def _odds_url(self) -> str:
        return f"{self._settings.odds_api_base_url.rstrip('/')}/sports/{self._settings.odds_api_sport}/odds"

    def normalize_event(self, event: dict[str, Any]) -> Optional[OddsSnapshot]:
        """Returns None for events with no bookmakers."""
        home = event.get("home_team")
        away = event.get("away_team")
        if not home or not away:
            raise SchemaMismatch(self.feed_type.value, "home_team/away_team", detail=str(event.get("id")))
        bookmakers = event.get("bookmakers") or []
        if not bookmakers:
            return None
        bookmaker = bookmakers[0]

        home_ml = away_ml = None
        for outcome in _market(bookmaker, "h2h"):
            if outcome.get("name") == home:
                home_ml = _as_int(outcome.get("price"))
            elif outcome.get("name") == away:
                away_ml = _as_int(outcome.get("price"))

        spread = None
        for outcome in _market(bookmaker, "spreads"):
            if outcome.get("name") == home:
                spread = _as_float(outcome.get("point"))

        totals = _market(bookmaker, "totals")
        total = _as_float(totals[0].get("point")) if totals else None

        return OddsSnapshot(
            external_id=event.get("id"),
            home_team_name=home,
            away_team_name=away,
            provider=bookmaker.get("title") or bookmaker.get("key") or "unknown",
            updated_at=parse_iso(bookmaker.get("last_update")) or utcnow(),
            spread=spread,
            total=total,
            home_moneyline=home_ml,
            away_moneyline=away_ml,
        )

    def normalize(self, raw: Any, result: FeedResult | None = None) -> list[OddsSnapshot]:
        result = result or self._new_result()
        snapshots = []
        for event in raw or []:
            try:
                snapshot = self.normalize_event(event)
            except SchemaMismatch as exc:
                logger.warning("schema_mismatch", feed=self.feed_type.value, field=exc.field)
                result.record("failed")
                continue
            if snapshot is None:
                result.record("skipped")
                continue
            snapshots.append(snapshot)
        return snapshots

    async def apply(self, entities: Sequence[OddsSnapshot], result: FeedResult) -> None:
        fixtures = await self._gateway.open_fixtures()
        for snapshot in entities:
            try:
                fixture = match_fixture(snapshot, fixtures)
                if fixture is None:
                    raise MappingFailure(
                        self.feed_type.value, f"{snapshot.away_team_name} @ {snapshot.home_team_name}"
                    )
            except MappingFailure as exc:
                logger.info("odds_unmapped", key=exc.key)
                result.record("failed")
                continue
            if await self._gateway.apply_odds(fixture.id, snapshot):
                result.record("mapped")
            else:
                result.record("skipped")

    async def run(self, payload: dict[str, Any]) -> FeedResult:
        if not self._settings.odds_api_key:
            raise ConfigurationError("odds_api_key is not configured")
        result = self._new_result()
        raw = await self.fetcher.fetch(
            self.feed_type,
            self._settings.odds_api_sport,
            self._odds_url(),
            params={
                "apiKey": self._settings.odds_api_key,
                "regions": "us",
                "markets": "h2h,spreads,totals",
                "oddsFormat": "american",
            },
        )
        await self.apply(self.normalize(raw, result), result)
        return self._log_result(result)
