"""
Game status feed (ESPN site scoreboard).

One scoreboard request per run. Events are matched to stored fixtures by the
(home, away) participant external-id pair inside a window around now, and
merged monotonically by the store gateway. Predictions on fixtures that were
finalized or corrected are rescored after those writes have committed, and
the settlement gate is evaluated at the end of every run.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional, Sequence

from shared.config import Settings
from shared.errors import MappingFailure, SchemaMismatch
from shared.models.domain import FixtureView, GameStatusUpdate
from shared.models.enums import FeedType, MergeOutcome
from shared.utils.logging import get_logger
from shared.utils.timeutil import ensure_utc, parse_iso, utcnow

from ingest.feeds.base import BaseFeedAdapter, FeedResult
from ingest.fetcher import FeedFetcher
from scoring.engine import ScoringEngine
from settlement.gate import SettlementGate
from store.gateway import StoreGateway

logger = get_logger(__name__)


def _score(raw: Any) -> Optional[int]:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _broadcast(competition: dict[str, Any]) -> Optional[str]:
    for item in competition.get("broadcasts") or []:
        names = item.get("names") or []
        if names:
            return names[0]
    for item in competition.get("geoBroadcasts") or []:
        name = (item.get("media") or {}).get("shortName")
        if name:
            return name
    return None


class GameStatusFeed(BaseFeedAdapter[GameStatusUpdate]):
    feed_type = FeedType.GAME_STATUS

    def __init__(
        self,
        gateway: StoreGateway,
        fetcher: Optional[FeedFetcher] = None,
        scoring: Optional[ScoringEngine] = None,
        settings: Settings | None = None,
        gate: Optional[SettlementGate] = None,
    ) -> None:
        super().__init__(gateway, fetcher, settings)
        self._scoring = scoring
        self._gate = gate

    def _scoreboard_url(self) -> str:
        return f"{self._settings.espn_site_base_url.rstrip('/')}/{self._settings.site_league_path}/scoreboard"

    # ── Normalization ───────────────────────────────────────────────────

    def normalize_event(self, event: dict[str, Any], observed_at: datetime) -> GameStatusUpdate:
        competitions = event.get("competitions") or []
        if not competitions:
            raise SchemaMismatch(self.feed_type.value, "competitions", detail=str(event.get("id")))
        competition = competitions[0]
        sides: dict[str, dict[str, Any]] = {}
        for competitor in competition.get("competitors") or []:
            sides[competitor.get("homeAway", "")] = competitor
        home, away = sides.get("home"), sides.get("away")
        if not home or not away:
            raise SchemaMismatch(self.feed_type.value, "competitors", detail=str(event.get("id")))

        def team_id(competitor: dict[str, Any]) -> str:
            value = (competitor.get("team") or {}).get("id") or competitor.get("id")
            if value in (None, ""):
                raise SchemaMismatch(self.feed_type.value, "competitor.id", detail=str(event.get("id")))
            return str(value)

        status_type = ((event.get("status") or competition.get("status") or {}).get("type") or {})
        return GameStatusUpdate(
            external_id=str(event["id"]) if event.get("id") is not None else None,
            home_team_external_id=team_id(home),
            away_team_external_id=team_id(away),
            home_score=_score(home.get("score")),
            away_score=_score(away.get("score")),
            completed=bool(status_type.get("completed", False)),
            scheduled_at=parse_iso(event.get("date")),
            broadcast=_broadcast(competition),
            observed_at=observed_at,
        )

    def normalize(
        self, raw: Any, result: FeedResult | None = None, observed_at: datetime | None = None
    ) -> list[GameStatusUpdate]:
        result = result or self._new_result()
        observed_at = observed_at or utcnow()
        updates = []
        for event in (raw or {}).get("events", []):
            try:
                updates.append(self.normalize_event(event, observed_at))
            except SchemaMismatch as exc:
                logger.warning("schema_mismatch", feed=self.feed_type.value, field=exc.field)
                result.record("failed")
        return updates

    # ── Matching / apply ────────────────────────────────────────────────

    @staticmethod
    def match_fixture(update: GameStatusUpdate, fixtures: Sequence[FixtureView]) -> Optional[FixtureView]:
        if update.external_id:
            for fixture in fixtures:
                if fixture.external_id == update.external_id:
                    return fixture
        candidates = [
            f for f in fixtures
            if f.home_team_external_id == update.home_team_external_id
            and f.away_team_external_id == update.away_team_external_id
        ]
        if not candidates:
            return None
        anchor = ensure_utc(update.scheduled_at or update.observed_at)
        return min(candidates, key=lambda f: abs((f.scheduled_at - anchor).total_seconds()))

    async def apply(
        self,
        entities: Sequence[GameStatusUpdate],
        result: FeedResult,
        fixtures: Sequence[FixtureView] = (),
    ) -> list[int]:
        """Merge every update; returns ids of fixtures whose result changed."""
        affected: list[int] = []
        for update in entities:
            try:
                fixture = self.match_fixture(update, fixtures)
                if fixture is None:
                    raise MappingFailure(
                        self.feed_type.value,
                        f"{update.away_team_external_id}@{update.home_team_external_id}",
                    )
            except MappingFailure as exc:
                logger.debug("game_unmapped", key=exc.key)
                result.record("failed")
                continue

            outcome = await self._gateway.apply_game_status(fixture.id, update)
            if outcome in (MergeOutcome.STALE, MergeOutcome.REJECTED_UNFINALIZE):
                logger.warning("game_status_ignored", fixture_id=fixture.id, outcome=outcome.value)
                result.record("skipped")
            elif outcome == MergeOutcome.UNCHANGED:
                result.record("skipped")
            else:
                result.record("mapped")
            if outcome.affects_scoring:
                affected.append(fixture.id)
        return affected

    async def run(self, payload: dict[str, Any]) -> FeedResult:
        result = self._new_result()
        now = utcnow()
        window = timedelta(hours=self._settings.game_status_window_h)
        fixtures = await self._gateway.fixtures_between(now - window, now + window)
        result.detail["fixtures_in_window"] = len(fixtures)

        if fixtures:
            raw = await self.fetcher.fetch(self.feed_type, "scoreboard", self._scoreboard_url())
            updates = self.normalize(raw, result, observed_at=now)
            affected = await self.apply(updates, result, fixtures=fixtures)

            # Runs only after every write above has committed.
            rescored = 0
            if affected and self._scoring is not None:
                rescored = await self._scoring.recompute(affected)
            result.detail.update(finalized=affected, rescored=rescored)

        # A period can come due with nothing left in the window.
        if self._gate is not None:
            result.detail["newly_settled"] = await self._gate.evaluate(now)
        return self._log_result(result)

    async def lock_started(self, payload: dict[str, Any] | None = None) -> FeedResult:
        """Set the lock flag on every fixture whose scheduled time has passed."""
        result = self._new_result()
        locked = await self._gateway.lock_started_fixtures(utcnow())
        result.detail["locked"] = locked
        logger.info("fixtures_locked", locked=locked)
        return result
