"""
Leaderboard aggregation.

Rankings are computed at read time from prediction and fixture state, and
only over settled periods. Each read first settles any period that already
meets the quiet-window rule, so visibility never waits on the weekly job.
"""
from __future__ import annotations

from collections import defaultdict
from typing import Iterable, Optional

from shared.models.domain import (
    FavoriteParticipant,
    LeaderboardEntry,
    PeriodBreakdown,
    ScoredPick,
    SubjectStats,
)
from shared.utils.logging import get_logger

from settlement.gate import SettlementGate
from store.gateway import StoreGateway

logger = get_logger(__name__)

FAVORITE_TEAMS_LIMIT = 5


def accuracy(correct: int, total: int) -> float:
    """Percentage rounded to one decimal; ties count in ``total``."""
    if total == 0:
        return 0.0
    return round(correct / total * 100, 1)


def rank_entries(picks: Iterable[ScoredPick]) -> list[LeaderboardEntry]:
    """Order by points desc, then correct count desc; subject id breaks exact ties."""
    totals: dict[str, dict] = defaultdict(lambda: {"points": 0, "total": 0, "correct": 0, "periods": set()})
    for pick in picks:
        row = totals[pick.subject_id]
        row["points"] += pick.points_earned
        row["total"] += 1
        row["correct"] += 1 if pick.is_correct else 0
        row["periods"].add(pick.period)

    ordered = sorted(totals.items(), key=lambda kv: (-kv[1]["points"], -kv[1]["correct"], kv[0]))
    return [
        LeaderboardEntry(
            rank=position,
            subject_id=subject_id,
            total_points=row["points"],
            total_predictions=row["total"],
            correct_predictions=row["correct"],
            accuracy_percentage=accuracy(row["correct"], row["total"]),
            periods_participated=len(row["periods"]),
        )
        for position, (subject_id, row) in enumerate(ordered, start=1)
    ]


def build_subject_stats(subject_id: str, picks: Iterable[ScoredPick]) -> SubjectStats:
    mine = [p for p in picks if p.subject_id == subject_id]
    if not mine:
        return SubjectStats(subject_id=subject_id)

    by_period: dict[str, list[ScoredPick]] = defaultdict(list)
    by_team: dict[int, list[ScoredPick]] = defaultdict(list)
    for pick in mine:
        by_period[pick.period].append(pick)
        by_team[pick.picked_team_id].append(pick)

    breakdown = []
    for period, rows in by_period.items():
        correct = sum(1 for r in rows if r.is_correct)
        breakdown.append(
            PeriodBreakdown(
                period=period,
                points=sum(r.points_earned for r in rows),
                predictions=len(rows),
                correct=correct,
                accuracy=accuracy(correct, len(rows)),
            )
        )
    breakdown.sort(key=lambda b: b.period)

    favorites = []
    for team_id, rows in by_team.items():
        correct = sum(1 for r in rows if r.is_correct)
        favorites.append(
            FavoriteParticipant(
                team_id=team_id,
                name=rows[0].picked_team_name,
                pick_count=len(rows),
                correct_count=correct,
                accuracy=accuracy(correct, len(rows)),
            )
        )
    favorites.sort(key=lambda f: (-f.pick_count, -f.correct_count, f.name))

    total_correct = sum(1 for p in mine if p.is_correct)
    return SubjectStats(
        subject_id=subject_id,
        total_points=sum(p.points_earned for p in mine),
        total_predictions=len(mine),
        correct_predictions=total_correct,
        accuracy_percentage=accuracy(total_correct, len(mine)),
        periods_participated=len(by_period),
        weekly_breakdown=breakdown,
        favorite_teams=favorites[:FAVORITE_TEAMS_LIMIT],
    )


class LeaderboardAggregator:
    def __init__(self, gateway: StoreGateway, gate: Optional[SettlementGate] = None) -> None:
        self._gateway = gateway
        self._gate = gate

    async def _settle_due(self) -> None:
        if self._gate is not None:
            await self._gate.evaluate()

    async def weekly_leaderboard(self, period: str) -> list[LeaderboardEntry]:
        """Empty until the period is settled."""
        await self._settle_due()
        if not await self._gateway.is_settled(period):
            logger.debug("leaderboard_period_unsettled", period=period)
            return []
        return rank_entries(await self._gateway.scored_picks([period]))

    async def season_leaderboard(self) -> list[LeaderboardEntry]:
        await self._settle_due()
        periods = await self._gateway.settled_periods()
        return rank_entries(await self._gateway.scored_picks(periods))

    async def subject_stats(self, subject_id: str) -> SubjectStats:
        await self._settle_due()
        periods = await self._gateway.settled_periods()
        return build_subject_stats(subject_id, await self._gateway.scored_picks(periods))
