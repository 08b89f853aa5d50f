from collections import defaultdict
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .errors import AuthorizationError, NotFoundError, ValidationError
from .models import (
    ApprovalStatus,
    Challenge,
    ChallengeAttempt,
    ChallengeParticipant,
    ChallengeRequest,
    Event,
    EventParticipant,
    InteractionType,
    ParticipantStatus,
    Post,
    PostInteraction,
    RsvpStatus,
    Tournament,
    TournamentParticipant,
    TournamentResult,
    User,
    utcnow,
)
from .policy import (
    Actor,
    ChallengeAttemptResource,
    ChallengeParticipantResource,
    ChallengeRequestResource,
    ChallengeResource,
    EventParticipantResource,
    EventResource,
    InteractionResource,
    PostResource,
    TournamentParticipantResource,
    TournamentResource,
    TournamentResultResource,
    UserResource,
)
from .schemas import (
    AttemptOut,
    ChallengeOut,
    ChallengeParticipantOut,
    ChallengeRequestOut,
    EventOut,
    EventParticipantOut,
    InteractionOut,
    LeaderboardEntry,
    PostOut,
    StandingOut,
    TournamentOut,
    TournamentParticipantOut,
    TournamentResultOut,
    UserOut,
)

TOURNAMENT_WIN_POINTS = 10
TOURNAMENT_RUNNER_UP_POINTS = 5
MATCH_WIN_POINTS = 3

TIMEFRAMES = {
    "week": timedelta(days=7),
    "month": timedelta(days=30),
    "year": timedelta(days=365),
    "all": None,
}


def get_or_404(db: Session, model, row_id: str, label: str):
    row = db.get(model, row_id)
    if row is None:
        raise NotFoundError(f"{label} not found")
    return row


def home_society(actor: Actor, requested: Optional[str]) -> Optional[str]:
    """Society new content is published into: always the actor's own.

    Reaching other societies goes through ``is_global`` and ``is_intersociety``.
    """
    if requested is not None and requested != actor.society:
        raise AuthorizationError("Cannot publish into another society")
    return actor.society


# Policy views


def user_resource(user: User) -> UserResource:
    return UserResource(id=user.id, society=user.society)


def post_resource(post: Post) -> PostResource:
    return PostResource(user_id=post.user_id, approval_status=post.approval_status, society_id=post.society_id)


def interaction_resource(post: Post, user_id: str) -> InteractionResource:
    return InteractionResource(user_id=user_id, post=post_resource(post))


def event_resource(event: Event) -> EventResource:
    return EventResource(
        organizer_id=event.organizer_id,
        approval_status=event.approval_status,
        society_id=event.society_id,
    )


def event_participant_resource(event: Event, user_id: str) -> EventParticipantResource:
    return EventParticipantResource(user_id=user_id, event=event_resource(event))


def tournament_resource(tournament: Tournament) -> TournamentResource:
    return TournamentResource(
        organizer_id=tournament.organizer_id,
        approval_status=tournament.approval_status,
        society_id=tournament.society_id,
    )


def tournament_participant_resource(tournament: Tournament, user_id: str) -> TournamentParticipantResource:
    return TournamentParticipantResource(user_id=user_id, tournament=tournament_resource(tournament))


def tournament_result_resource(tournament: Tournament) -> TournamentResultResource:
    return TournamentResultResource(tournament=tournament_resource(tournament))


def challenge_resource(db: Session, challenge: Challenge) -> ChallengeResource:
    creator_society = db.execute(select(User.society).where(User.id == challenge.creator_id)).scalar_one_or_none()
    return ChallengeResource(
        creator_id=challenge.creator_id,
        visibility=challenge.visibility,
        creator_society=creator_society,
    )


def challenge_request_resource(db: Session, challenge: Challenge, requester_id: str) -> ChallengeRequestResource:
    return ChallengeRequestResource(requester_id=requester_id, challenge=challenge_resource(db, challenge))


def challenge_participant_resource(
    db: Session, challenge: Challenge, user_id: str
) -> ChallengeParticipantResource:
    return ChallengeParticipantResource(user_id=user_id, challenge=challenge_resource(db, challenge))


def challenge_attempt_resource(
    db: Session, challenge: Challenge, participant: ChallengeParticipant
) -> ChallengeAttemptResource:
    return ChallengeAttemptResource(
        participant_user_id=participant.user_id,
        challenge=challenge_resource(db, challenge),
    )


# Serializers


def serialize_user(user: User) -> UserOut:
    return UserOut.model_validate(user, from_attributes=True)


def serialize_post(db: Session, post: Post) -> PostOut:
    counts = dict(
        db.execute(
            select(PostInteraction.type, func.count(PostInteraction.id))
            .where(PostInteraction.post_id == post.id)
            .group_by(PostInteraction.type)
        ).all()
    )
    return PostOut(
        id=post.id,
        user_id=post.user_id,
        society_id=post.society_id,
        title=post.title,
        content=post.content,
        image_urls=post.image_urls or [],
        is_global=post.is_global,
        has_challenge=post.has_challenge,
        approval_status=post.approval_status,
        approval_notes=post.approval_notes,
        created_at=post.created_at,
        like_count=counts.get(InteractionType.LIKE, 0),
        comment_count=counts.get(InteractionType.COMMENT, 0),
        share_count=counts.get(InteractionType.SHARE, 0),
    )


def serialize_interaction(interaction: PostInteraction) -> InteractionOut:
    return InteractionOut.model_validate(interaction, from_attributes=True)


def serialize_event(db: Session, event: Event) -> EventOut:
    going = (
        db.execute(
            select(func.count(EventParticipant.id)).where(
                EventParticipant.event_id == event.id,
                EventParticipant.status.in_([RsvpStatus.GOING, RsvpStatus.ATTENDED]),
            )
        ).scalar()
        or 0
    )
    out = EventOut.model_validate(event, from_attributes=True)
    out.going_count = going
    return out


def serialize_event_participant(participant: EventParticipant) -> EventParticipantOut:
    return EventParticipantOut.model_validate(participant, from_attributes=True)


def serialize_tournament(db: Session, tournament: Tournament) -> TournamentOut:
    out = TournamentOut.model_validate(tournament, from_attributes=True)
    out.participant_count = approved_registration_count(db, tournament.id)
    return out


def serialize_tournament_participant(participant: TournamentParticipant) -> TournamentParticipantOut:
    return TournamentParticipantOut.model_validate(participant, from_attributes=True)


def serialize_result(result: TournamentResult) -> TournamentResultOut:
    return TournamentResultOut(
        id=result.id,
        tournament_id=result.tournament_id,
        winner_id=result.winner_id,
        runner_up_id=result.runner_up_id,
        matches=result.matches or [],
        created_at=result.created_at,
    )


def serialize_challenge(db: Session, challenge: Challenge) -> ChallengeOut:
    out = ChallengeOut.model_validate(challenge, from_attributes=True)
    out.participant_count = seated_participant_count(db, challenge.id)
    return out


def serialize_request(request: ChallengeRequest) -> ChallengeRequestOut:
    return ChallengeRequestOut.model_validate(request, from_attributes=True)


def serialize_participant(participant: ChallengeParticipant) -> ChallengeParticipantOut:
    return ChallengeParticipantOut.model_validate(participant, from_attributes=True)


def serialize_attempt(attempt: ChallengeAttempt) -> AttemptOut:
    return AttemptOut(
        id=attempt.id,
        participant_id=attempt.participant_id,
        attempt_date=attempt.attempt_date,
        score=attempt.score,
        evidence=attempt.evidence or {},
        notes=attempt.notes,
        verified=attempt.verified,
        verified_by=attempt.verified_by,
        verified_at=attempt.verified_at,
    )


# Counts


def approved_registration_count(db: Session, tournament_id: str) -> int:
    return (
        db.execute(
            select(func.count(TournamentParticipant.id)).where(
                TournamentParticipant.tournament_id == tournament_id,
                TournamentParticipant.registration_status == ApprovalStatus.APPROVED,
            )
        ).scalar()
        or 0
    )


def seated_participant_count(db: Session, challenge_id: str) -> int:
    """Participants holding a seat: everyone except those who withdrew or were disqualified."""
    return (
        db.execute(
            select(func.count(ChallengeParticipant.id)).where(
                ChallengeParticipant.challenge_id == challenge_id,
                ChallengeParticipant.status.in_([ParticipantStatus.ACTIVE, ParticipantStatus.COMPLETED]),
            )
        ).scalar()
        or 0
    )


# Standings


def _rank(rows: list, key) -> list[tuple[int, object]]:
    """Competition ranking: ties share a rank and the next rank skips ahead."""
    ranked = []
    previous = None
    rank = 0
    for position, row in enumerate(rows, start=1):
        value = key(row)
        if value != previous:
            rank = position
            previous = value
        ranked.append((rank, row))
    return ranked


def tournament_standings(db: Session, tournament: Tournament) -> list[StandingOut]:
    result = db.execute(
        select(TournamentResult).where(TournamentResult.tournament_id == tournament.id)
    ).scalar_one_or_none()
    if result is None:
        return []

    played: dict[str, int] = defaultdict(int)
    wins: dict[str, int] = defaultdict(int)
    for match in result.matches or []:
        for player in (match["player1"], match["player2"]):
            played[player] += 1
        wins[match["winner"]] += 1

    names = dict(
        db.execute(select(User.id, User.display_name).where(User.id.in_(list(played)))).all()
    )
    rows = sorted(
        played,
        key=lambda user_id: (-wins[user_id], played[user_id] - wins[user_id], names.get(user_id) or user_id),
    )
    return [
        StandingOut(
            rank=rank,
            user_id=user_id,
            display_name=names.get(user_id),
            played=played[user_id],
            wins=wins[user_id],
            losses=played[user_id] - wins[user_id],
            points=wins[user_id] * MATCH_WIN_POINTS,
        )
        for rank, user_id in _rank(rows, key=lambda user_id: wins[user_id])
    ]


def leaderboard(
    db: Session,
    society_id: Optional[str] = None,
    timeframe: str = "month",
    limit: int = 50,
    now: Optional[datetime] = None,
) -> list[LeaderboardEntry]:
    if timeframe not in TIMEFRAMES:
        raise ValidationError(f"timeframe must be one of {', '.join(TIMEFRAMES)}")
    window = TIMEFRAMES[timeframe]
    since = (now or utcnow()) - window if window else None

    tournament_wins: dict[str, int] = defaultdict(int)
    tournament_points: dict[str, float] = defaultdict(float)
    stmt = select(TournamentResult)
    if since is not None:
        stmt = stmt.where(TournamentResult.created_at >= since)
    for result in db.execute(stmt).scalars():
        if result.winner_id:
            tournament_wins[result.winner_id] += 1
            tournament_points[result.winner_id] += TOURNAMENT_WIN_POINTS
        if result.runner_up_id:
            tournament_points[result.runner_up_id] += TOURNAMENT_RUNNER_UP_POINTS

    stmt = (
        select(ChallengeParticipant.user_id, func.sum(ChallengeParticipant.final_score))
        .join(Challenge, Challenge.id == ChallengeParticipant.challenge_id)
        .where(
            ChallengeParticipant.status == ParticipantStatus.COMPLETED,
            ChallengeParticipant.final_score.is_not(None),
        )
        .group_by(ChallengeParticipant.user_id)
    )
    if since is not None:
        stmt = stmt.where(Challenge.expiry_date >= since)
    challenge_points = {user_id: float(total or 0) for user_id, total in db.execute(stmt).all()}

    user_ids = set(tournament_points) | set(challenge_points)
    if not user_ids:
        return []
    user_stmt = select(User).where(User.id.in_(user_ids))
    if society_id:
        user_stmt = user_stmt.where(User.society == society_id)
    users = db.execute(user_stmt).scalars().all()

    def points(user: User) -> float:
        return tournament_points.get(user.id, 0) + challenge_points.get(user.id, 0)

    ordered = sorted(users, key=lambda user: (-points(user), user.display_name or user.email))[:limit]
    return [
        LeaderboardEntry(
            rank=rank,
            user_id=user.id,
            display_name=user.display_name,
            society=user.society,
            points=points(user),
            tournament_wins=tournament_wins.get(user.id, 0),
            challenge_points=challenge_points.get(user.id, 0),
        )
        for rank, user in _rank(ordered, key=points)
    ]
