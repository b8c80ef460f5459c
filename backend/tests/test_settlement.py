"""
Tests for the settlement gate and leaderboard aggregation.

Run: pytest backend/tests/test_settlement.py -v
"""
from __future__ import annotations

import pytest

from shared.config import Settings
from shared.models.domain import GameStatusUpdate, ScoredPick
from scoring.engine import ScoringEngine
from settlement.gate import SettlementGate
from settlement.leaderboard import LeaderboardAggregator, accuracy, build_subject_stats, rank_entries
from store.gateway import StoreGateway
from tests.helpers import KICKOFF, hours, seed_matchup

FINAL_AT = KICKOFF + hours(3)


def _final(home: int, away: int, at=FINAL_AT) -> GameStatusUpdate:
    return GameStatusUpdate(
        home_team_external_id="12",
        away_team_external_id="2",
        home_score=home,
        away_score=away,
        completed=True,
        observed_at=at,
    )


def pick(subject: str, correct: bool | None, points: int, period: str = "W1", team: int = 1, name: str = "A") -> ScoredPick:
    return ScoredPick(
        subject_id=subject,
        period=period,
        picked_team_id=team,
        picked_team_name=name,
        is_correct=correct,
        points_earned=points,
    )


# ── Gate ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_period_not_settled_until_every_fixture_final(gateway: StoreGateway, settings: Settings) -> None:
    first, _, _ = await seed_matchup(gateway)
    await seed_matchup(gateway, home=("Detroit Lions", "8"), away=("Chicago Bears", "3"))
    await gateway.apply_game_status(first, _final(24, 17))

    gate = SettlementGate(gateway, settings)
    assert await gate.evaluate(now=FINAL_AT + hours(48)) == []
    assert not await gateway.is_settled("2025-W1")


@pytest.mark.asyncio
async def test_period_settles_only_after_quiet_window(gateway: StoreGateway, settings: Settings) -> None:
    fixture_id, _, _ = await seed_matchup(gateway)
    await gateway.apply_game_status(fixture_id, _final(24, 17))
    gate = SettlementGate(gateway, settings)

    assert await gate.evaluate(now=FINAL_AT + hours(23)) == []
    assert await gate.evaluate(now=FINAL_AT + hours(24)) == ["2025-W1"]
    assert await gateway.is_settled("2025-W1")


@pytest.mark.asyncio
async def test_settled_window_never_reverts(gateway: StoreGateway, settings: Settings) -> None:
    fixture_id, _, _ = await seed_matchup(gateway)
    await gateway.apply_game_status(fixture_id, _final(24, 17))
    gate = SettlementGate(gateway, settings)
    await gate.evaluate(now=FINAL_AT + hours(25))

    # A late correction moves the last finalization past the window.
    await gateway.apply_game_status(fixture_id, _final(24, 20, at=FINAL_AT + hours(26)))
    assert await gate.evaluate(now=FINAL_AT + hours(27)) == []
    assert await gateway.is_settled("2025-W1")
    assert await gateway.settled_periods() == ["2025-W1"]


# ── Aggregation ─────────────────────────────────────────────────────────

def test_rank_by_points_then_correct_count() -> None:
    picks = [
        pick("alice", True, 2), pick("alice", False, 0),
        pick("bob", True, 1), pick("bob", True, 1),
        pick("carol", True, 1),
    ]
    entries = rank_entries(picks)
    assert [(e.rank, e.subject_id, e.total_points, e.correct_predictions) for e in entries] == [
        (1, "bob", 2, 2),
        (2, "alice", 2, 1),
        (3, "carol", 1, 1),
    ]


def test_accuracy_rounds_to_one_decimal() -> None:
    assert accuracy(2, 3) == 66.7
    assert accuracy(0, 0) == 0.0


def test_tie_counts_in_accuracy_denominator() -> None:
    (entry,) = rank_entries([pick("alice", True, 1), pick("alice", False, 0)])
    assert entry.total_predictions == 2
    assert entry.accuracy_percentage == 50.0


def test_subject_stats_breakdown_and_favorites() -> None:
    picks = [
        pick("alice", True, 1, period="W1", team=1, name="Chiefs"),
        pick("alice", False, 0, period="W1", team=2, name="Bills"),
        pick("alice", True, 1, period="W2", team=1, name="Chiefs"),
        pick("bob", True, 1, period="W2", team=3, name="Lions"),
    ]
    stats = build_subject_stats("alice", picks)

    assert stats.total_points == 2
    assert stats.total_predictions == 3
    assert stats.periods_participated == 2
    assert [(b.period, b.points, b.predictions) for b in stats.weekly_breakdown] == [("W1", 1, 2), ("W2", 1, 1)]
    assert stats.favorite_teams[0].name == "Chiefs"
    assert stats.favorite_teams[0].pick_count == 2
    assert stats.favorite_teams[0].accuracy == 100.0


def test_subject_stats_favorites_capped_at_five() -> None:
    picks = [pick("alice", True, 1, team=i, name=f"T{i}") for i in range(8)]
    assert len(build_subject_stats("alice", picks).favorite_teams) == 5


def test_subject_stats_empty_for_unknown_subject() -> None:
    stats = build_subject_stats("nobody", [pick("alice", True, 1)])
    assert stats.total_predictions == 0
    assert stats.favorite_teams == []


@pytest.mark.asyncio
async def test_weekly_leaderboard_hidden_until_settled(gateway: StoreGateway, settings: Settings) -> None:
    fixture_id, home_id, away_id = await seed_matchup(gateway)
    await gateway.upsert_prediction("alice", fixture_id, home_id)
    await gateway.upsert_prediction("bob", fixture_id, away_id)
    await gateway.apply_game_status(fixture_id, _final(24, 17))
    await ScoringEngine(gateway, settings).recompute()

    board = LeaderboardAggregator(gateway)
    assert await board.weekly_leaderboard("2025-W1") == []
    assert await board.season_leaderboard() == []

    await SettlementGate(gateway, settings).evaluate(now=FINAL_AT + hours(25))

    weekly = await board.weekly_leaderboard("2025-W1")
    assert [(e.subject_id, e.total_points, e.rank) for e in weekly] == [("alice", 1, 1), ("bob", 0, 2)]
    season = await board.season_leaderboard()
    assert [e.subject_id for e in season] == ["alice", "bob"]
    stats = await board.subject_stats("alice")
    assert stats.favorite_teams[0].name == "Kansas City Chiefs"
