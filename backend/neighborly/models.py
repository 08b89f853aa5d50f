import enum
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Role(str, enum.Enum):
    PRESIDENT = "President"
    TREASURER = "Treasurer"
    MEMBER = "Member"
    TENANT = "Tenant"
    UNVERIFIED = "Unverified"


class ApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class InteractionType(str, enum.Enum):
    LIKE = "like"
    COMMENT = "comment"
    SHARE = "share"


class ScheduleStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    ONGOING = "ongoing"
    COMPLETED = "completed"


class RsvpStatus(str, enum.Enum):
    GOING = "going"
    MAYBE = "maybe"
    NOT_GOING = "not_going"
    ATTENDED = "attended"


class ChallengeStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"


class Visibility(str, enum.Enum):
    PUBLIC = "public"
    SOCIETY = "society"
    PRIVATE = "private"


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class ParticipantStatus(str, enum.Enum):
    ACTIVE = "active"
    WITHDRAWN = "withdrawn"
    COMPLETED = "completed"
    DISQUALIFIED = "disqualified"


def enum_column(enum_cls: type[enum.Enum], name: str) -> SAEnum:
    # Stored as the literal value with a CHECK constraint listing every value
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        validate_strings=True,
        length=20,
        values_callable=lambda cls: [member.value for member in cls],
    )


UQ_EVENT_PARTICIPANT = "uq_event_participants_event_user"
UQ_TOURNAMENT_PARTICIPANT = "uq_tournament_participants_tournament_user"
UQ_TOURNAMENT_RESULT = "uq_tournament_results_tournament"
UQ_CHALLENGE_REQUESTER = "uq_challenge_requests_challenge_requester"
UQ_CHALLENGE_PARTICIPANT = "uq_challenge_participants_challenge_user"
UQ_USER_EMAIL = "uq_users_email"


class User(Base):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("email", name=UQ_USER_EMAIL),)

    id: Mapped[str] = mapped_column(String(128), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    display_name: Mapped[str | None] = mapped_column(String(200), default=None)
    password_hash: Mapped[str | None] = mapped_column(String(255), default=None)
    society: Mapped[str | None] = mapped_column(String(120), default=None, index=True)
    role: Mapped[Role] = mapped_column(enum_column(Role, "user_role"), default=Role.UNVERIFIED, index=True)
    is_logged_in: Mapped[bool] = mapped_column(Boolean, default=False)
    invited_by: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, onupdate=utcnow)


class OtpVerification(Base):
    __tablename__ = "otp_verification"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    otp: Mapped[str] = mapped_column(String(12))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    verified: Mapped[bool] = mapped_column(Boolean, default=False)


class Post(Base):
    __tablename__ = "posts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    society_id: Mapped[str | None] = mapped_column(String(120), default=None, index=True)
    title: Mapped[str | None] = mapped_column(String(200), default=None)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    image_urls: Mapped[list[str] | None] = mapped_column(JSON, default=None)
    is_global: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    has_challenge: Mapped[bool] = mapped_column(Boolean, default=False)
    approval_status: Mapped[ApprovalStatus] = mapped_column(
        enum_column(ApprovalStatus, "post_approval_status"), default=ApprovalStatus.PENDING, index=True
    )
    approval_notes: Mapped[str | None] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, onupdate=utcnow)


class PostInteraction(Base):
    __tablename__ = "post_interactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    post_id: Mapped[str] = mapped_column(ForeignKey("posts.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    type: Mapped[InteractionType] = mapped_column(enum_column(InteractionType, "interaction_type"), index=True)
    content: Mapped[str | None] = mapped_column(Text, default=None)
    parent_id: Mapped[str | None] = mapped_column(
        ForeignKey("post_interactions.id", ondelete="CASCADE"), default=None, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow)


class Event(Base):
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    society_id: Mapped[str] = mapped_column(String(120), index=True)
    location: Mapped[str] = mapped_column(String(200))
    date: Mapped[datetime] = mapped_column(DateTime(timezone=False), index=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), default=None)
    organizer_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    status: Mapped[ScheduleStatus] = mapped_column(
        enum_column(ScheduleStatus, "event_status"), default=ScheduleStatus.SCHEDULED, index=True
    )
    is_intersociety: Mapped[bool] = mapped_column(Boolean, default=False)
    approval_status: Mapped[ApprovalStatus] = mapped_column(
        enum_column(ApprovalStatus, "event_approval_status"), default=ApprovalStatus.PENDING, index=True
    )
    approval_notes: Mapped[str | None] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, onupdate=utcnow)


class EventParticipant(Base):
    __tablename__ = "event_participants"
    __table_args__ = (UniqueConstraint("event_id", "user_id", name=UQ_EVENT_PARTICIPANT),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    event_id: Mapped[str] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    status: Mapped[RsvpStatus] = mapped_column(enum_column(RsvpStatus, "rsvp_status"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, onupdate=utcnow)


class Tournament(Base):
    __tablename__ = "tournaments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    society_id: Mapped[str] = mapped_column(String(120), index=True)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), index=True)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=False))
    organizer_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    status: Mapped[ScheduleStatus] = mapped_column(
        enum_column(ScheduleStatus, "tournament_status"), default=ScheduleStatus.SCHEDULED, index=True
    )
    is_intersociety: Mapped[bool] = mapped_column(Boolean, default=False)
    max_participants: Mapped[int | None] = mapped_column(Integer, default=None)
    approval_status: Mapped[ApprovalStatus] = mapped_column(
        enum_column(ApprovalStatus, "tournament_approval_status"), default=ApprovalStatus.PENDING
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, onupdate=utcnow)


class TournamentParticipant(Base):
    __tablename__ = "tournament_participants"
    __table_args__ = (UniqueConstraint("tournament_id", "user_id", name=UQ_TOURNAMENT_PARTICIPANT),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tournament_id: Mapped[str] = mapped_column(ForeignKey("tournaments.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    registration_status: Mapped[ApprovalStatus] = mapped_column(
        enum_column(ApprovalStatus, "registration_status"), default=ApprovalStatus.PENDING, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, onupdate=utcnow)


class TournamentResult(Base):
    __tablename__ = "tournament_results"
    __table_args__ = (UniqueConstraint("tournament_id", name=UQ_TOURNAMENT_RESULT),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tournament_id: Mapped[str] = mapped_column(ForeignKey("tournaments.id", ondelete="CASCADE"))
    winner_id: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), default=None)
    runner_up_id: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), default=None)
    # [{"round": 1, "player1": ..., "player2": ..., "winner": ..., "score": "6-4"}]
    matches: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, index=True)


class Challenge(Base):
    __tablename__ = "challenges"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    post_id: Mapped[str] = mapped_column(ForeignKey("posts.id", ondelete="CASCADE"), index=True)
    creator_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    status: Mapped[ChallengeStatus] = mapped_column(
        enum_column(ChallengeStatus, "challenge_status"), default=ChallengeStatus.ACTIVE, index=True
    )
    criteria: Mapped[str] = mapped_column(Text, nullable=False)
    reward: Mapped[str | None] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow)
    expiry_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), index=True)
    max_participants: Mapped[int | None] = mapped_column(Integer, default=None)
    visibility: Mapped[Visibility] = mapped_column(
        enum_column(Visibility, "challenge_visibility"), default=Visibility.PUBLIC
    )


class ChallengeRequest(Base):
    __tablename__ = "challenge_requests"
    __table_args__ = (UniqueConstraint("challenge_id", "requester_id", name=UQ_CHALLENGE_REQUESTER),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    challenge_id: Mapped[str] = mapped_column(ForeignKey("challenges.id", ondelete="CASCADE"), index=True)
    requester_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    message: Mapped[str | None] = mapped_column(Text, default=None)
    status: Mapped[RequestStatus] = mapped_column(
        enum_column(RequestStatus, "challenge_request_status"), default=RequestStatus.PENDING, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, onupdate=utcnow)


class ChallengeParticipant(Base):
    __tablename__ = "challenge_participants"
    __table_args__ = (UniqueConstraint("challenge_id", "user_id", name=UQ_CHALLENGE_PARTICIPANT),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    challenge_id: Mapped[str] = mapped_column(ForeignKey("challenges.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow)
    status: Mapped[ParticipantStatus] = mapped_column(
        enum_column(ParticipantStatus, "challenge_participant_status"), default=ParticipantStatus.ACTIVE
    )
    final_score: Mapped[float | None] = mapped_column(Float, default=None)
    rank: Mapped[int | None] = mapped_column(Integer, default=None)


class ChallengeAttempt(Base):
    __tablename__ = "challenge_attempts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    participant_id: Mapped[str] = mapped_column(
        ForeignKey("challenge_participants.id", ondelete="CASCADE"), index=True
    )
    attempt_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=utcnow, index=True)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    evidence: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    notes: Mapped[str | None] = mapped_column(Text, default=None)
    verified: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    verified_by: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), default=None)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), default=None)
