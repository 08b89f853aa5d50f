from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .models import (
    ApprovalStatus,
    ChallengeStatus,
    InteractionType,
    ParticipantStatus,
    RequestStatus,
    Role,
    RsvpStatus,
    ScheduleStatus,
    Visibility,
)


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _required_text(value: str) -> str:
    cleaned = value.strip() if isinstance(value, str) else ""
    if not cleaned:
        raise ValueError("must not be empty")
    return cleaned


# Users and authentication


class UserOut(BaseModel):
    id: str
    email: str
    display_name: Optional[str] = None
    society: Optional[str] = None
    role: Role
    is_logged_in: bool
    created_at: datetime


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(min_length=8)
    display_name: Optional[str] = None
    society: Optional[str] = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str):
        cleaned = value.strip().lower()
        if "@" not in cleaned:
            raise ValueError("must be an email address")
        return cleaned


class OtpVerifyRequest(BaseModel):
    user_id: str
    otp: str


class OtpResendRequest(BaseModel):
    user_id: str


class LoginRequest(BaseModel):
    email: str
    password: str


class FederatedSignIn(BaseModel):
    """Identity handed over by the external auth provider after sign-in."""

    user_id: str
    email: str
    display_name: Optional[str] = None

    @field_validator("user_id", "email")
    @classmethod
    def must_not_be_empty(cls, value: str):
        return _required_text(value)


class UserInvite(BaseModel):
    email: str
    display_name: Optional[str] = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str):
        cleaned = value.strip().lower()
        if "@" not in cleaned:
            raise ValueError("must be an email address")
        return cleaned


class RoleChange(BaseModel):
    role: Role


class ProfileUpdate(BaseModel):
    display_name: Optional[str] = None
    society: Optional[str] = None

    @field_validator("society")
    @classmethod
    def society_not_blank(cls, value: Optional[str]):
        return None if value is None else _required_text(value)


class PasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(min_length=8)


# Posts


class PostCreate(BaseModel):
    content: str
    title: Optional[str] = None
    society_id: Optional[str] = None
    image_urls: list[str] = Field(default_factory=list)
    is_global: bool = False

    @field_validator("content")
    @classmethod
    def must_not_be_empty(cls, value: str):
        return _required_text(value)


class PostOut(BaseModel):
    id: str
    user_id: str
    society_id: Optional[str] = None
    title: Optional[str] = None
    content: str
    image_urls: list[str] = Field(default_factory=list)
    is_global: bool
    has_challenge: bool
    approval_status: ApprovalStatus
    approval_notes: Optional[str] = None
    created_at: datetime
    like_count: int = 0
    comment_count: int = 0
    share_count: int = 0


class ApprovalDecision(BaseModel):
    decision: Literal["approved", "rejected"]
    notes: Optional[str] = None

    @property
    def status(self) -> ApprovalStatus:
        return ApprovalStatus(self.decision)


class InteractionCreate(BaseModel):
    type: InteractionType
    content: Optional[str] = None
    parent_id: Optional[str] = None

    @model_validator(mode="after")
    def comment_needs_content(self):
        if self.type is InteractionType.COMMENT and not (self.content or "").strip():
            raise ValueError("comments must have content")
        if self.parent_id and self.type is not InteractionType.COMMENT:
            raise ValueError("only comments can reply to another interaction")
        return self


class InteractionOut(BaseModel):
    id: str
    post_id: str
    user_id: str
    type: InteractionType
    content: Optional[str] = None
    parent_id: Optional[str] = None
    created_at: datetime


# Events


class EventCreate(BaseModel):
    title: str
    location: str
    date: datetime
    end_date: Optional[datetime] = None
    description: Optional[str] = None
    society_id: Optional[str] = None
    is_intersociety: bool = False

    @field_validator("title", "location")
    @classmethod
    def must_not_be_empty(cls, value: str):
        return _required_text(value)

    @field_validator("date", "end_date")
    @classmethod
    def to_utc(cls, value: datetime | None):
        return _naive_utc(value)

    @model_validator(mode="after")
    def end_after_start(self):
        if self.end_date is not None and self.end_date < self.date:
            raise ValueError("end_date must not be before date")
        return self


class EventOut(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    society_id: str
    location: str
    date: datetime
    end_date: Optional[datetime] = None
    organizer_id: str
    status: ScheduleStatus
    is_intersociety: bool
    approval_status: ApprovalStatus
    approval_notes: Optional[str] = None
    going_count: int = 0


class RsvpRequest(BaseModel):
    status: RsvpStatus


class EventParticipantOut(BaseModel):
    id: str
    event_id: str
    user_id: str
    status: RsvpStatus
    updated_at: datetime


# Tournaments


class TournamentCreate(BaseModel):
    name: str
    start_date: datetime
    end_date: datetime
    description: Optional[str] = None
    society_id: Optional[str] = None
    max_participants: Optional[int] = Field(default=None, ge=2)
    is_intersociety: bool = False

    @field_validator("name")
    @classmethod
    def must_not_be_empty(cls, value: str):
        return _required_text(value)

    @field_validator("start_date", "end_date")
    @classmethod
    def to_utc(cls, value: datetime):
        return _naive_utc(value)

    @model_validator(mode="after")
    def end_after_start(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class TournamentOut(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    society_id: str
    start_date: datetime
    end_date: datetime
    organizer_id: str
    status: ScheduleStatus
    is_intersociety: bool
    max_participants: Optional[int] = None
    approval_status: ApprovalStatus
    participant_count: int = 0


class TournamentParticipantOut(BaseModel):
    id: str
    tournament_id: str
    user_id: str
    registration_status: ApprovalStatus


class MatchIn(BaseModel):
    round: int = Field(ge=1)
    player1: str
    player2: str
    winner: str
    score: Optional[str] = None

    @model_validator(mode="after")
    def winner_played(self):
        if self.winner not in {self.player1, self.player2}:
            raise ValueError("winner must be one of the players")
        return self


class TournamentResultCreate(BaseModel):
    winner_id: str
    runner_up_id: Optional[str] = None
    matches: list[MatchIn] = Field(default_factory=list)


class TournamentResultOut(BaseModel):
    id: str
    tournament_id: str
    winner_id: Optional[str] = None
    runner_up_id: Optional[str] = None
    matches: list[dict[str, Any]]
    created_at: datetime


class StandingOut(BaseModel):
    rank: int
    user_id: str
    display_name: Optional[str] = None
    played: int
    wins: int
    losses: int
    points: int


class LeaderboardEntry(BaseModel):
    rank: int
    user_id: str
    display_name: Optional[str] = None
    society: Optional[str] = None
    points: float
    tournament_wins: int
    challenge_points: float


# Challenges


class ChallengeCreate(BaseModel):
    post_id: str
    title: str
    criteria: str
    expiry_date: datetime
    description: Optional[str] = None
    reward: Optional[str] = None
    start_date: Optional[datetime] = None
    max_participants: Optional[int] = Field(default=None, ge=1)
    visibility: Visibility = Visibility.PUBLIC

    @field_validator("title", "criteria")
    @classmethod
    def must_not_be_empty(cls, value: str):
        return _required_text(value)

    @field_validator("expiry_date", "start_date")
    @classmethod
    def to_utc(cls, value: datetime | None):
        return _naive_utc(value)


class ChallengeOut(BaseModel):
    id: str
    post_id: str
    creator_id: str
    title: str
    description: Optional[str] = None
    status: ChallengeStatus
    criteria: str
    reward: Optional[str] = None
    created_at: datetime
    start_date: datetime
    expiry_date: datetime
    max_participants: Optional[int] = None
    visibility: Visibility
    participant_count: int = 0


class ChallengeRequestCreate(BaseModel):
    message: Optional[str] = None


class ChallengeRequestOut(BaseModel):
    id: str
    challenge_id: str
    requester_id: str
    message: Optional[str] = None
    status: RequestStatus
    created_at: datetime


class RequestDecision(BaseModel):
    decision: Literal["accepted", "rejected"]


class RequestDecisionOut(BaseModel):
    request: ChallengeRequestOut
    participant: Optional["ChallengeParticipantOut"] = None


class ChallengeParticipantOut(BaseModel):
    id: str
    challenge_id: str
    user_id: str
    joined_at: datetime
    status: ParticipantStatus
    final_score: Optional[float] = None
    rank: Optional[int] = None


class AttemptCreate(BaseModel):
    score: float
    evidence: dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None


class AttemptOut(BaseModel):
    id: str
    participant_id: str
    attempt_date: datetime
    score: float
    evidence: dict[str, Any]
    notes: Optional[str] = None
    verified: bool
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None


class AttemptVerify(BaseModel):
    verified: bool = True


RequestDecisionOut.model_rebuild()
