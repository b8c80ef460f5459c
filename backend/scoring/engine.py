"""
Prediction scoring.

A prediction is unscored until its fixture is final with both scores; from
then on correctness and points are a pure function of (pick, weight, fixture).
Every pass recomputes from scratch, so a corrected score is picked up by the
next pass without any reconciliation step.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Optional

from shared.config import Settings, get_settings
from shared.models.domain import FixtureView, PredictionScore, PredictionView
from shared.utils.logging import get_logger
from shared.utils.metrics import PREDICTIONS_SCORED
from shared.utils.timeutil import utcnow

from store.gateway import StoreGateway

logger = get_logger(__name__)


@dataclass(frozen=True)
class ScoringRules:
    rival_bonus_points: int = 1
    upset_bonus_points: int = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScoringRules":
        return cls(
            rival_bonus_points=settings.rival_bonus_points,
            upset_bonus_points=settings.upset_bonus_points,
        )


def underdog_team_id(fixture: FixtureView) -> Optional[int]:
    """Home spread > 0 means the home side is getting points."""
    if fixture.spread is None or fixture.spread == 0:
        return None
    return fixture.home_team_id if fixture.spread > 0 else fixture.away_team_id


def score_prediction(
    picked_team_id: int,
    weight: int,
    fixture: FixtureView,
    rules: ScoringRules = ScoringRules(),
) -> tuple[Optional[bool], int]:
    """
    Returns (is_correct, points). (None, 0) while the fixture has no final
    result. A tie is incorrect for both sides.
    """
    if not fixture.has_result:
        return None, 0
    if fixture.home_score == fixture.away_score:
        return False, 0

    winner = fixture.home_team_id if fixture.home_score > fixture.away_score else fixture.away_team_id
    if picked_team_id != winner:
        return False, 0

    points = weight
    if fixture.is_rivalry:
        points += rules.rival_bonus_points
    if rules.upset_bonus_points and underdog_team_id(fixture) == picked_team_id:
        points += rules.upset_bonus_points
    return True, points


class ScoringEngine:
    def __init__(
        self,
        gateway: StoreGateway,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._gateway = gateway
        self._rules = ScoringRules.from_settings(settings or get_settings())
        self._clock = clock

    @property
    def rules(self) -> ScoringRules:
        return self._rules

    def score_all(
        self, fixtures: Iterable[FixtureView], predictions: Iterable[PredictionView]
    ) -> list[PredictionScore]:
        by_id = {f.id: f for f in fixtures}
        scores = []
        for prediction in predictions:
            fixture = by_id.get(prediction.fixture_id)
            if fixture is None:
                continue
            is_correct, points = score_prediction(prediction.picked_team_id, prediction.weight, fixture, self._rules)
            scores.append(PredictionScore(prediction_id=prediction.id, is_correct=is_correct, points=points))
        return scores

    async def recompute(self, fixture_ids: Iterable[int] | None = None) -> int:
        """
        Rescore every prediction on the given fixtures (all fixtures when None).
        Returns the number of prediction rows whose stored score changed.
        """
        ids = list(fixture_ids) if fixture_ids is not None else None
        if ids is not None and not ids:
            return 0
        fixtures = await self._gateway.list_fixtures(ids)
        predictions = await self._gateway.predictions_for_fixtures(ids)
        scores = self.score_all(fixtures, predictions)
        changed = await self._gateway.save_prediction_scores(scores, self._clock())
        PREDICTIONS_SCORED.inc(changed)
        logger.info(
            "predictions_scored",
            fixtures=len(fixtures),
            evaluated=len(scores),
            changed=changed,
        )
        return changed
