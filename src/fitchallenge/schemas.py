# src/fitchallenge/schemas.py

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models.activity import ActivitySource, ActivityType, Metric
from .models.challenge import ChallengeStatus, Timeframe


class ActivityInput(BaseModel):
    """One measurement as entered by the user.

    ``duration`` carries hours for the ``time`` metric and the raw value for
    ``steps`` and ``count``; ``distance`` is in the unit named by the metric.
    """
    activity_type: str = Field(..., min_length=1)
    metric: Metric
    duration: float = Field(0, ge=0)
    distance: float = Field(0, ge=0)
    calories: float = Field(0, ge=0)
    source: ActivitySource = ActivitySource.MANUAL
    created_at: Optional[datetime] = None

    @field_validator("activity_type")
    @classmethod
    def strip_activity_type(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("activity_type must not be blank")
        return v


class ActivityLog(BaseModel):
    """A single user action that may log several metrics for one activity type."""
    activity_type: str = Field(..., min_length=1)
    values: Dict[Metric, float]
    created_at: Optional[datetime] = None

    @field_validator("values")
    @classmethod
    def check_values(cls, v):
        if not v:
            raise ValueError("at least one metric value is required")
        if any(value < 0 for value in v.values()):
            raise ValueError("metric values must not be negative")
        return v


class ImportedActivity(BaseModel):
    """An activity already fetched from an external fitness source."""
    activity_type: str
    start_time: datetime
    duration: float = 0          # minutes
    distance: Optional[float] = None   # kilometers
    calories: Optional[float] = None
    steps: Optional[float] = None
    sleep_minutes: Optional[float] = None


class ActivityOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    activity_type: ActivityType
    metric: Metric
    duration_minutes: Optional[float] = None
    distance_km: Optional[float] = None
    steps: Optional[float] = None
    calories: Optional[float] = None
    count: Optional[float] = None
    source: ActivitySource
    notes: Optional[str] = None
    created_at: datetime


class ChallengeRuleInput(BaseModel):
    activity_type: ActivityType
    metric: Metric
    target_value: float = Field(..., gt=0)
    points: int = Field(..., ge=0)
    timeframe: Timeframe = Timeframe.DAY


class ChallengeCreate(BaseModel):
    challenge_type: str
    title: str
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_open_ended: bool = False
    is_private: bool = False
    rules: List[ChallengeRuleInput] = []
    # Race mode track
    points_per_checkpoint: Optional[int] = Field(None, gt=0)
    total_checkpoints: Optional[int] = Field(None, ge=1)


class ChallengeStatusUpdate(BaseModel):
    status: ChallengeStatus


class ChallengeRuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    activity_type: ActivityType
    metric: Metric
    target_value: float
    points: int
    timeframe: Timeframe


class ChallengeSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: Optional[str] = None
    challenge_type: str
    status: ChallengeStatus
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_private: bool = False
    rules: Optional[dict] = None
    participant_count: int = 0

    @field_validator("challenge_type", mode="before")
    @classmethod
    def enum_value(cls, v):
        return getattr(v, "value", v)


class ChallengeDetail(ChallengeSummary):
    creator_id: str
    creator_nickname: Optional[str] = None
    is_open_ended: bool = False
    challenge_activities: List[ChallengeRuleOut] = []


class ParticipantOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    challenge_id: int
    user_id: str
    status: str
    total_points: int
    joined_at: datetime
    left_at: Optional[datetime] = None
    rejoined_at: Optional[datetime] = None
    last_activity_date: Optional[datetime] = None
    map_position: Optional[float] = None

    @field_validator("status", mode="before")
    @classmethod
    def enum_value(cls, v):
        return getattr(v, "value", v)


class RaceStanding(BaseModel):
    participant_id: int
    user_id: str
    status: str
    total_points: int
    map_position: int
    nickname: Optional[str] = None
    avatar_url: Optional[str] = None


class JoinEligibility(BaseModel):
    can_join: bool
    active_count: int


class MetricOption(BaseModel):
    metric: str
    challenge_id: int
    challenge_title: str


class ActivityTypeOptions(BaseModel):
    activity_type: str
    metrics: List[MetricOption] = []
