"""
Team records feed.
No upstream call: records are recomputed from every final fixture and the
resulting "W-L[-T]" strings are written onto every fixture row.
"""
from __future__ import annotations

from typing import Any, Iterable, Sequence

from shared.models.domain import FixtureView, TeamRecord
from shared.models.enums import FeedType
from shared.utils.logging import get_logger

from ingest.feeds.base import BaseFeedAdapter, FeedResult

logger = get_logger(__name__)


def compute_team_records(fixtures: Iterable[FixtureView], team_ids: Iterable[int]) -> dict[int, TeamRecord]:
    """Pure function of the final fixtures: always a full recompute."""
    records = {team_id: TeamRecord(team_id=team_id) for team_id in team_ids}
    for fixture in fixtures:
        if not fixture.has_result:
            continue
        home = records.setdefault(fixture.home_team_id, TeamRecord(team_id=fixture.home_team_id))
        away = records.setdefault(fixture.away_team_id, TeamRecord(team_id=fixture.away_team_id))
        if fixture.home_score > fixture.away_score:
            home.wins += 1
            away.losses += 1
        elif fixture.home_score < fixture.away_score:
            home.losses += 1
            away.wins += 1
        else:
            home.ties += 1
            away.ties += 1
    return records


class RecordsFeed(BaseFeedAdapter[TeamRecord]):
    feed_type = FeedType.RECORDS

    def normalize(self, raw: Any, result: FeedResult | None = None) -> list[TeamRecord]:
        """``raw`` is {"fixtures": [...], "team_ids": [...]} read from the store."""
        records = compute_team_records(raw.get("fixtures", []), raw.get("team_ids", []))
        return [records[team_id] for team_id in sorted(records)]

    async def apply(self, entities: Sequence[TeamRecord], result: FeedResult) -> None:
        touched = await self._gateway.write_team_records({r.team_id: r.record for r in entities})
        result.record("mapped", len(entities))
        result.detail["fixtures_touched"] = touched

    async def run(self, payload: dict[str, Any]) -> FeedResult:
        result = self._new_result()
        teams = await self._gateway.list_teams()
        fixtures = await self._gateway.final_fixtures()
        records = self.normalize({"fixtures": fixtures, "team_ids": [t.id for t in teams]}, result)
        await self.apply(records, result)
        return self._log_result(result)
