"""
Injury feed (ESPN core API).

Per team: fetch the injury reference list, follow at most ``injury_detail_cap``
detail references, resolve each athlete, then wholesale-replace the team's
stored injuries in one transaction. A team whose fetches fail keeps its
previous list; the run then raises so the queue retries.
"""
from __future__ import annotations

from typing import Any, Optional, Sequence
from urllib.parse import urlparse

from shared.errors import SchemaMismatch, UpstreamUnavailable
from shared.models.domain import InjuryEntry, TeamRef
from shared.models.enums import FeedType, InjuryStatus
from shared.utils.logging import get_logger
from shared.utils.timeutil import parse_iso

from ingest.feeds.base import BaseFeedAdapter, FeedResult

logger = get_logger(__name__)

UNKNOWN_PLAYER = "Unknown Player"
UNKNOWN_POSITION = "N/A"


def _ref_id(ref: Optional[str]) -> Optional[str]:
    """Last path segment of an ESPN $ref URL (query string dropped)."""
    if not ref:
        return None
    segment = urlparse(ref).path.rstrip("/").rsplit("/", 1)[-1]
    return segment or None


class InjuryFeed(BaseFeedAdapter[InjuryEntry]):
    feed_type = FeedType.INJURIES

    def _list_url(self, team_external_id: str) -> str:
        base = self._settings.espn_core_base_url.rstrip("/")
        return f"{base}/{self._settings.league_path}/teams/{team_external_id}/injuries"

    # ── Normalization ───────────────────────────────────────────────────

    def normalize_entry(self, detail: dict[str, Any], athlete: Optional[dict[str, Any]]) -> InjuryEntry:
        """
        Build one InjuryEntry from a detail document and its (optional) athlete.

        Raises:
            SchemaMismatch: when the detail carries no injury id.
        """
        injury_id = detail.get("id")
        if injury_id in (None, ""):
            raise SchemaMismatch(self.feed_type.value, "id")

        details = detail.get("details") or {}
        athlete_ref = (detail.get("athlete") or {}).get("$ref")
        player_name = UNKNOWN_PLAYER
        position = UNKNOWN_POSITION
        if athlete:
            player_name = athlete.get("displayName") or athlete.get("fullName") or UNKNOWN_PLAYER
            position = (athlete.get("position") or {}).get("abbreviation") or UNKNOWN_POSITION
        if player_name == UNKNOWN_PLAYER or position == UNKNOWN_POSITION:
            logger.warning("schema_mismatch", feed=self.feed_type.value, injury_id=str(injury_id), field="athlete")

        return InjuryEntry(
            injury_id=str(injury_id),
            player_id=_ref_id(athlete_ref),
            player_name=player_name,
            position=position,
            status=InjuryStatus.parse(detail.get("status")),
            short_comment=detail.get("shortComment") or "",
            long_comment=detail.get("longComment") or "",
            injury_type=details.get("type") or "Unknown",
            injury_location=details.get("location") or "Unknown",
            injury_detail=details.get("detail") or "Not Specified",
            side=details.get("side") or "Not Specified",
            return_date=details.get("returnDate") or None,
            fantasy_status=(details.get("fantasyStatus") or {}).get("description"),
            type_abbreviation=(detail.get("type") or {}).get("abbreviation") or "O",
            reported_at=parse_iso(detail.get("date")),
        )

    def normalize(self, raw: Any, result: FeedResult | None = None) -> list[InjuryEntry]:
        """``raw`` is a list of {"detail": ..., "athlete": ...} pairs for one team."""
        result = result or self._new_result()
        entries = []
        for item in raw or []:
            try:
                entries.append(self.normalize_entry(item.get("detail") or {}, item.get("athlete")))
            except SchemaMismatch as exc:
                logger.warning("schema_mismatch", feed=self.feed_type.value, field=exc.field)
                result.record("failed")
        return entries

    # ── Apply ───────────────────────────────────────────────────────────

    async def apply(self, entities: Sequence[InjuryEntry], result: FeedResult, team_id: int | None = None) -> None:
        if team_id is None:
            raise ValueError("injury apply needs the owning team id")
        written = await self._gateway.replace_injuries(team_id, entities)
        result.record("mapped", written)

    # ── Fetch ───────────────────────────────────────────────────────────

    async def _fetch_team(self, team: TeamRef) -> list[dict[str, Any]]:
        listing = await self.fetcher.fetch(
            self.feed_type, f"team:{team.external_id}", self._list_url(team.external_id or "")
        )
        refs = [item.get("$ref") for item in (listing or {}).get("items", []) if item.get("$ref")]
        items: list[dict[str, Any]] = []
        for ref in refs[: self._settings.injury_detail_cap]:
            detail = await self.fetcher.fetch(self.feed_type, f"detail:{ref}", ref)
            athlete = None
            athlete_ref = ((detail or {}).get("athlete") or {}).get("$ref")
            if athlete_ref:
                try:
                    athlete = await self.fetcher.fetch(self.feed_type, f"athlete:{athlete_ref}", athlete_ref)
                except UpstreamUnavailable as exc:
                    logger.warning("athlete_lookup_failed", team=team.name, error=str(exc))
            items.append({"detail": detail or {}, "athlete": athlete})
        return items

    async def run(self, payload: dict[str, Any]) -> FeedResult:
        result = self._new_result()
        wanted = set(payload.get("team_ids") or [])
        teams = [
            t for t in await self._gateway.list_teams()
            if t.external_id and (not wanted or t.id in wanted)
        ]
        failed_teams: list[str] = []
        for team in teams:
            try:
                raw = await self._fetch_team(team)
            except UpstreamUnavailable as exc:
                logger.warning("injury_team_fetch_failed", team=team.name, error=str(exc))
                failed_teams.append(team.name)
                continue
            entries = self.normalize(raw, result)
            await self.apply(entries, result, team_id=team.id)

        result.detail["teams"] = len(teams)
        result.detail["failed_teams"] = failed_teams
        self._log_result(result)
        if failed_teams:
            raise UpstreamUnavailable(
                self.feed_type.value,
                self._settings.espn_core_base_url,
                detail=f"{len(failed_teams)} team(s) failed: {', '.join(failed_teams)}",
            )
        return result
