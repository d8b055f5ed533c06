# src/fitchallenge/models/challenge.py

from sqlalchemy import (
    Column, String, Text, DateTime, Date, Float, ForeignKey, Enum, Boolean, Integer, JSON,
    CheckConstraint, UniqueConstraint,
)
from sqlalchemy.orm import relationship
import enum

from .base import Base, TimestampedModel, utcnow
from .activity import ActivityType, Metric

class ChallengeType(enum.Enum):
    RACE = "race"
    SURVIVAL = "survival"
    STREAK = "streak"
    CUSTOM = "custom"

class ChallengeStatus(enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class ParticipantStatus(enum.Enum):
    ACTIVE = "active"
    LEFT = "left"

class Timeframe(enum.Enum):
    DAY = "day"
    WEEK = "week"

class Challenge(Base, TimestampedModel):
    __tablename__ = "challenges"

    title            = Column(String, nullable=False)
    description      = Column(Text, nullable=True)
    challenge_type   = Column(Enum(ChallengeType), nullable=False)
    creator_id       = Column(String, nullable=False, index=True)
    start_date       = Column(DateTime, nullable=True)
    end_date         = Column(DateTime, nullable=True)
    is_open_ended    = Column(Boolean, default=False, nullable=False)
    is_private       = Column(Boolean, default=False, nullable=False)
    status           = Column(Enum(ChallengeStatus), default=ChallengeStatus.ACTIVE, nullable=False, index=True)
    # Legacy rule schema: allowed_activities, points_per_activity, metrics
    rules            = Column(JSON, nullable=True)

    challenge_activities = relationship(
        "ChallengeActivity", back_populates="challenge", cascade="all, delete-orphan"
    )
    participants     = relationship("ChallengeParticipant", back_populates="challenge")


class ChallengeActivity(Base, TimestampedModel):
    __tablename__ = "challenge_activities"

    challenge_id     = Column(Integer, ForeignKey("challenges.id"), nullable=False, index=True)
    activity_type    = Column(Enum(ActivityType), nullable=False)
    metric           = Column(Enum(Metric), nullable=False)
    target_value     = Column(Float, nullable=False)
    points           = Column(Integer, nullable=False, default=0)
    timeframe        = Column(Enum(Timeframe), nullable=False, default=Timeframe.DAY)

    challenge        = relationship("Challenge", back_populates="challenge_activities")

    __table_args__ = (
        CheckConstraint("target_value > 0", name="ck_challenge_activities_target_positive"),
        CheckConstraint("points >= 0", name="ck_challenge_activities_points_non_negative"),
    )


class ChallengeParticipant(Base, TimestampedModel):
    __tablename__ = "challenge_participants"

    challenge_id       = Column(Integer, ForeignKey("challenges.id"), nullable=False, index=True)
    user_id            = Column(String, nullable=False, index=True)
    status             = Column(Enum(ParticipantStatus), default=ParticipantStatus.ACTIVE, nullable=False, index=True)
    total_points       = Column(Integer, default=0, nullable=False)
    current_streak     = Column(Integer, nullable=True)
    longest_streak     = Column(Integer, nullable=True)
    joined_at          = Column(DateTime, default=utcnow, nullable=False)
    left_at            = Column(DateTime, nullable=True)
    rejoined_at        = Column(DateTime, nullable=True)
    last_activity_date = Column(DateTime, nullable=True)
    # Race mode only
    map_position       = Column(Float, nullable=True)

    challenge          = relationship("Challenge", back_populates="participants")

    __table_args__ = (
        UniqueConstraint("challenge_id", "user_id", name="uq_challenge_participants_challenge_user"),
    )


class PointsLog(Base, TimestampedModel):
    __tablename__ = "points_logs"

    participant_id        = Column(Integer, ForeignKey("challenge_participants.id"), nullable=False, index=True)
    challenge_activity_id = Column(Integer, ForeignKey("challenge_activities.id"), nullable=False)
    activity_id           = Column(Integer, ForeignKey("activities.id"), nullable=False)
    period_start          = Column(Date, nullable=False)
    points                = Column(Integer, nullable=False)

    __table_args__ = (
        # One award per rule per day/week for a participant
        UniqueConstraint(
            "participant_id", "challenge_activity_id", "period_start",
            name="uq_points_logs_participant_rule_period",
        ),
    )
