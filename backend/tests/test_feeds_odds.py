"""
Odds feed tests: event normalization, fixture matching, and apply rules.

Run: pytest backend/tests/test_feeds_odds.py -v
"""
from __future__ import annotations

import httpx
import pytest

from shared.config import Settings
from shared.errors import ConfigurationError
from shared.models.domain import FixtureView, GameStatusUpdate, OddsSnapshot
from shared.utils.cache import ResultCache
from shared.utils.http_client import FeedHTTPClient
from ingest.feeds.odds import OddsFeed, match_fixture, nickname_key
from ingest.fetcher import FeedFetcher
from store.gateway import StoreGateway
from tests.helpers import KICKOFF, hours, seed_matchup


def event(home="Kansas City Chiefs", away="Buffalo Bills", last_update="2025-09-06T12:00:00Z", books=None) -> dict:
    default_books = [
        {
            "key": "draftkings",
            "title": "DraftKings",
            "last_update": last_update,
            "markets": [
                {"key": "h2h", "outcomes": [{"name": home, "price": -150}, {"name": away, "price": 130}]},
                {"key": "spreads", "outcomes": [{"name": home, "point": -3.0}, {"name": away, "point": 3.0}]},
                {"key": "totals", "outcomes": [{"name": "Over", "point": 47.5}, {"name": "Under", "point": 47.5}]},
            ],
        },
        {
            "key": "fanduel",
            "title": "FanDuel",
            "last_update": last_update,
            "markets": [{"key": "spreads", "outcomes": [{"name": home, "point": -4.5}]}],
        },
    ]
    return {
        "id": "evt-1",
        "home_team": home,
        "away_team": away,
        "commence_time": "2025-09-07T17:00:00Z",
        "bookmakers": default_books if books is None else books,
    }


def view(fid: int, home: str, away: str, external_id: str | None = None) -> FixtureView:
    return FixtureView(
        id=fid, period="2025-W1", scheduled_at=KICKOFF, home_team_id=fid * 10, away_team_id=fid * 10 + 1,
        home_team_name=home, away_team_name=away, external_id=external_id,
    )


def snap(home: str, away: str, external_id: str | None = None) -> OddsSnapshot:
    return OddsSnapshot(
        home_team_name=home, away_team_name=away, provider="x", updated_at=KICKOFF, external_id=external_id
    )


# ── Normalization ───────────────────────────────────────────────────────

def test_first_bookmaker_is_used_without_averaging(gateway: StoreGateway, settings: Settings) -> None:
    snapshot = OddsFeed(gateway, settings=settings).normalize_event(event())
    assert snapshot.provider == "DraftKings"
    assert snapshot.spread == -3.0
    assert snapshot.total == 47.5
    assert (snapshot.home_moneyline, snapshot.away_moneyline) == (-150, 130)
    assert snapshot.updated_at.isoformat() == "2025-09-06T12:00:00+00:00"


def test_event_without_bookmakers_is_skipped(gateway: StoreGateway, settings: Settings) -> None:
    feed = OddsFeed(gateway, settings=settings)
    result = feed._new_result()
    assert feed.normalize([event(books=[]), event()], result) != []
    assert result.skipped == 1


def test_event_missing_participants_counts_failed(gateway: StoreGateway, settings: Settings) -> None:
    feed = OddsFeed(gateway, settings=settings)
    result = feed._new_result()
    assert feed.normalize([{"id": "bad", "bookmakers": []}], result) == []
    assert result.failed == 1


# ── Matching ────────────────────────────────────────────────────────────

def test_match_prefers_external_id() -> None:
    fixtures = [view(1, "Kansas City Chiefs", "Buffalo Bills"), view(2, "Other", "Team", external_id="evt-9")]
    assert match_fixture(snap("Kansas City Chiefs", "Buffalo Bills", external_id="evt-9"), fixtures).id == 2


def test_match_by_full_name_ignores_punctuation_and_case() -> None:
    fixtures = [view(1, "San Francisco 49ers", "Los Angeles Rams")]
    assert match_fixture(snap("san francisco 49ERS", "Los Angeles Rams."), fixtures).id == 1


def test_match_falls_back_to_unique_nickname() -> None:
    fixtures = [view(1, "Kansas City Chiefs", "Buffalo Bills")]
    assert match_fixture(snap("KC Chiefs", "BUF Bills"), fixtures).id == 1
    assert nickname_key("New York Giants") == "giants"


def test_ambiguous_nickname_is_unmatched() -> None:
    fixtures = [view(1, "A Chiefs", "B Bills"), view(2, "C Chiefs", "D Bills")]
    assert match_fixture(snap("Kansas City Chiefs", "Buffalo Bills"), fixtures) is None


# ── Run / apply ─────────────────────────────────────────────────────────

def _feed(gateway: StoreGateway, settings: Settings, body: list, seen: list | None = None) -> OddsFeed:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request.url)
        return httpx.Response(200, json=body)

    client = FeedHTTPClient("odds", transport=httpx.MockTransport(handler), settings=settings)
    return OddsFeed(gateway, FeedFetcher(client, ResultCache(settings=settings)), settings=settings)


@pytest.mark.asyncio
async def test_run_writes_matched_and_counts_unmapped(gateway: StoreGateway, settings: Settings) -> None:
    fixture_id, _, _ = await seed_matchup(gateway)
    seen: list[httpx.URL] = []
    feed = _feed(gateway, settings, [event(), event(home="Detroit Lions", away="Chicago Bears")], seen)
    await feed.start()
    try:
        result = await feed.run({})
    finally:
        await feed.close()

    assert (result.mapped, result.failed) == (1, 1)
    assert (await gateway.get_fixture(fixture_id)).spread == -3.0
    params = seen[0].params
    assert params["apiKey"] == "odds-key"
    assert params["markets"] == "h2h,spreads,totals"
    assert params["oddsFormat"] == "american"
    assert seen[0].path.endswith("/sports/americanfootball_nfl/odds")


@pytest.mark.asyncio
async def test_final_fixture_is_not_a_candidate(gateway: StoreGateway, settings: Settings) -> None:
    fixture_id, _, _ = await seed_matchup(gateway)
    await gateway.apply_game_status(
        fixture_id,
        GameStatusUpdate(home_team_external_id="12", away_team_external_id="2",
                         home_score=21, away_score=14, completed=True, observed_at=KICKOFF + hours(3)),
    )
    feed = OddsFeed(gateway, settings=settings)
    result = feed._new_result()
    await feed.apply(feed.normalize([event()]), result)

    assert result.mapped == 0
    assert (await gateway.get_fixture(fixture_id)).spread is None


@pytest.mark.asyncio
async def test_repeat_snapshot_is_skipped(gateway: StoreGateway, settings: Settings) -> None:
    await seed_matchup(gateway)
    feed = OddsFeed(gateway, settings=settings)
    first, second = feed._new_result(), feed._new_result()
    await feed.apply(feed.normalize([event()]), first)
    await feed.apply(feed.normalize([event()]), second)
    assert (first.mapped, second.mapped, second.skipped) == (1, 0, 1)


@pytest.mark.asyncio
async def test_missing_api_key_is_configuration_error(gateway: StoreGateway, settings: Settings) -> None:
    keyless = settings.model_copy(update={"odds_api_key": ""})
    with pytest.raises(ConfigurationError):
        await OddsFeed(gateway, settings=keyless).run({})
