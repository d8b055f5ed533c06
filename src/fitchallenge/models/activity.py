# src/fitchallenge/models/activity.py

from sqlalchemy import Column, String, Float, Enum, Index
import enum

from .base import Base, TimestampedModel

class ActivityType(enum.Enum):
    WORKOUT = "Workout"
    STEPS = "Steps"
    SLEEP = "Sleep"
    SCREEN_TIME = "Screen Time"
    NO_SUGARS = "No Sugars"
    HIGH_INTENSITY = "High Intensity"
    YOGA = "Yoga"
    COUNT = "Count"
    CUSTOM = "Custom"

# Names users may log without being folded into CUSTOM
GLOBAL_ACTIVITY_TYPES = {t.value: t for t in ActivityType if t is not ActivityType.CUSTOM}

class Metric(enum.Enum):
    STEPS = "steps"
    DISTANCE_KM = "distance_km"
    DISTANCE_MILES = "distance_miles"
    TIME = "time"
    CALORIES = "calories"
    COUNT = "count"

    @property
    def dimension(self) -> str:
        """What is being measured; both distance metrics share one dimension."""
        if self in (Metric.DISTANCE_KM, Metric.DISTANCE_MILES):
            return "distance"
        return self.value

    @classmethod
    def in_dimension(cls, dimension: str) -> list:
        return [m for m in cls if m.dimension == dimension]

# Canonical storage column per dimension (minutes, kilometers, raw counts)
VALUE_COLUMNS = {
    "time":     "duration_minutes",
    "distance": "distance_km",
    "steps":    "steps",
    "calories": "calories",
    "count":    "count",
}

class ActivitySource(enum.Enum):
    MANUAL = "manual"
    HEALTHKIT = "healthkit"
    HEALTH_CONNECT = "health_connect"
    OTHER = "other"

class Activity(Base, TimestampedModel):
    __tablename__ = "activities"

    user_id          = Column(String, nullable=False, index=True)
    activity_type    = Column(Enum(ActivityType), nullable=False)
    metric           = Column(Enum(Metric), nullable=False)
    duration_minutes = Column(Float, nullable=True)
    distance_km      = Column(Float, nullable=True)
    steps            = Column(Float, nullable=True)
    calories         = Column(Float, nullable=True)
    count            = Column(Float, nullable=True)
    source           = Column(Enum(ActivitySource), default=ActivitySource.MANUAL, nullable=False)
    notes            = Column(String, nullable=True)

    __table_args__ = (
        Index("idx_activities_user_type_created", "user_id", "activity_type", "created_at"),
    )

    @property
    def value(self) -> float:
        """The authoritative measurement, in canonical units."""
        return getattr(self, VALUE_COLUMNS[self.metric.dimension]) or 0.0

    @property
    def custom_name(self):
        if self.notes and self.notes.startswith("CustomName: "):
            return self.notes[len("CustomName: "):].split("; ", 1)[0]
        return None
