"""Domain enumerations for the pick'em sync engine."""
from __future__ import annotations

from enum import Enum


class FeedType(str, Enum):
    INJURIES = "injuries"
    ODDS = "odds"
    WEATHER = "weather"
    RECORDS = "records"
    GAME_STATUS = "game_status"


class QueueName(str, Enum):
    INJURIES = "injuries"
    ODDS = "odds"
    WEATHER = "weather"
    RECORDS = "records"
    GAME_STATUS = "game_status"
    SETTLEMENT = "settlement"


class InjuryStatus(str, Enum):
    OUT = "Out"
    DOUBTFUL = "Doubtful"
    QUESTIONABLE = "Questionable"
    PROBABLE = "Probable"
    ACTIVE = "Active"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, raw: object) -> "InjuryStatus":
        """Map an upstream status string onto the enum; anything unrecognised is UNKNOWN."""
        if not isinstance(raw, str):
            return cls.UNKNOWN
        value = raw.strip().lower()
        for member in cls:
            if member.value.lower() == value:
                return member
        if value in ("injured reserve", "ir", "suspended", "pup"):
            return cls.OUT
        if value in ("day-to-day", "day to day"):
            return cls.QUESTIONABLE
        return cls.UNKNOWN


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


class JobOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    SKIPPED = "SKIPPED"


class MergeOutcome(str, Enum):
    """Result of merging one game-status observation into a stored fixture."""
    UNCHANGED = "unchanged"
    UPDATED = "updated"
    FINALIZED = "finalized"
    CORRECTED = "corrected"
    STALE = "stale"
    REJECTED_UNFINALIZE = "rejected_unfinalize"

    @property
    def affects_scoring(self) -> bool:
        return self in (MergeOutcome.FINALIZED, MergeOutcome.CORRECTED)
