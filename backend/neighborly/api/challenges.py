from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..deps import get_actor, get_db
from ..errors import NotFoundError, ValidationError
from ..models import (
    Challenge,
    ChallengeAttempt,
    ChallengeParticipant,
    ChallengeRequest,
    ChallengeStatus,
    Post,
    utcnow,
)
from ..policy import Action, Actor, ChallengeResource, can_perform, require
from ..schemas import (
    AttemptCreate,
    AttemptOut,
    AttemptVerify,
    ChallengeCreate,
    ChallengeOut,
    ChallengeParticipantOut,
    ChallengeRequestCreate,
    ChallengeRequestOut,
    RequestDecision,
    RequestDecisionOut,
)
from ..services import (
    challenge_attempt_resource,
    challenge_participant_resource,
    challenge_request_resource,
    challenge_resource,
    get_or_404,
    post_resource,
    serialize_attempt,
    serialize_challenge,
    serialize_participant,
    serialize_request,
)
from .. import workflows

router = APIRouter()


def _visible_challenge(db: Session, challenge_id: str, actor: Actor) -> Challenge:
    challenge = get_or_404(db, Challenge, challenge_id, "Challenge")
    require(actor, Action.SELECT, challenge_resource(db, challenge), "Challenge not visible")
    workflows.refresh_expiry(db, challenge)
    return challenge


def _participant(db: Session, challenge: Challenge, participant_id: str) -> ChallengeParticipant:
    participant = db.get(ChallengeParticipant, participant_id)
    if not participant or participant.challenge_id != challenge.id:
        raise NotFoundError("Participant not found")
    return participant


@router.get("/api/challenges", response_model=list[ChallengeOut])
def list_challenges(
    status: ChallengeStatus | None = None,
    post_id: str | None = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    stmt = select(Challenge)
    if post_id:
        stmt = stmt.where(Challenge.post_id == post_id)
    challenges = db.execute(stmt.order_by(Challenge.expiry_date.asc())).scalars().all()
    results = []
    for challenge in challenges:
        if not can_perform(actor, Action.SELECT, challenge_resource(db, challenge)):
            continue
        workflows.refresh_expiry(db, challenge)
        if status and challenge.status is not status:
            continue
        results.append(serialize_challenge(db, challenge))
    return results


@router.post("/api/challenges", response_model=ChallengeOut)
def create_challenge(
    payload: ChallengeCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    post = get_or_404(db, Post, payload.post_id, "Post")
    require(actor, Action.SELECT, post_resource(post), "Post is awaiting approval")
    if post.user_id != actor.id:
        raise ValidationError("Challenges can only be attached to your own posts")
    start_date = payload.start_date or utcnow()
    if payload.expiry_date <= start_date:
        raise ValidationError("expiry_date must be after start_date")

    require(
        actor,
        Action.INSERT,
        ChallengeResource(creator_id=actor.id, visibility=payload.visibility, creator_society=actor.society),
    )
    challenge = Challenge(
        **payload.model_dump(exclude={"start_date"}),
        start_date=start_date,
        creator_id=actor.id,
        status=ChallengeStatus.ACTIVE,
    )
    db.add(challenge)
    post.has_challenge = True
    db.flush()
    db.refresh(challenge)
    return serialize_challenge(db, challenge)


@router.get("/api/challenges/{challenge_id}", response_model=ChallengeOut)
def get_challenge(
    challenge_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return serialize_challenge(db, _visible_challenge(db, challenge_id, actor))


@router.post("/api/challenges/{challenge_id}/complete", response_model=ChallengeOut)
def complete_challenge(
    challenge_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    challenge = _visible_challenge(db, challenge_id, actor)
    workflows.complete_challenge(db, actor, challenge)
    return serialize_challenge(db, challenge)


@router.get("/api/challenges/{challenge_id}/requests", response_model=list[ChallengeRequestOut])
def list_requests(
    challenge_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    challenge = _visible_challenge(db, challenge_id, actor)
    requests = (
        db.execute(
            select(ChallengeRequest)
            .where(ChallengeRequest.challenge_id == challenge.id)
            .order_by(ChallengeRequest.created_at.asc())
        )
        .scalars()
        .all()
    )
    return [
        serialize_request(request)
        for request in requests
        if can_perform(actor, Action.SELECT, challenge_request_resource(db, challenge, request.requester_id))
    ]


@router.post("/api/challenges/{challenge_id}/requests", response_model=ChallengeRequestOut)
def request_to_join(
    challenge_id: str,
    payload: ChallengeRequestCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    challenge = _visible_challenge(db, challenge_id, actor)
    request = workflows.request_to_join(db, actor, challenge, payload.message)
    return serialize_request(request)


@router.post(
    "/api/challenges/{challenge_id}/requests/{request_id}/decision",
    response_model=RequestDecisionOut,
)
def decide_request(
    challenge_id: str,
    request_id: str,
    payload: RequestDecision,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    challenge = _visible_challenge(db, challenge_id, actor)
    request = db.get(ChallengeRequest, request_id)
    if not request or request.challenge_id != challenge.id:
        raise NotFoundError("Request not found")
    participant = workflows.decide_request(db, actor, challenge, request, payload.decision == "accepted")
    return RequestDecisionOut(
        request=serialize_request(request),
        participant=serialize_participant(participant) if participant else None,
    )


@router.get("/api/challenges/{challenge_id}/participants", response_model=list[ChallengeParticipantOut])
def list_participants(
    challenge_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    challenge = _visible_challenge(db, challenge_id, actor)
    participants = (
        db.execute(
            select(ChallengeParticipant)
            .where(ChallengeParticipant.challenge_id == challenge.id)
            .order_by(ChallengeParticipant.rank.asc().nulls_last(), ChallengeParticipant.joined_at.asc())
        )
        .scalars()
        .all()
    )
    return [
        serialize_participant(p)
        for p in participants
        if can_perform(actor, Action.SELECT, challenge_participant_resource(db, challenge, p.user_id))
    ]


@router.post(
    "/api/challenges/{challenge_id}/participants/{participant_id}/withdraw",
    response_model=ChallengeParticipantOut,
)
def withdraw(
    challenge_id: str,
    participant_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    challenge = _visible_challenge(db, challenge_id, actor)
    participant = _participant(db, challenge, participant_id)
    workflows.withdraw(db, actor, challenge, participant)
    return serialize_participant(participant)


@router.post(
    "/api/challenges/{challenge_id}/participants/{participant_id}/disqualify",
    response_model=ChallengeParticipantOut,
)
def disqualify(
    challenge_id: str,
    participant_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    challenge = _visible_challenge(db, challenge_id, actor)
    participant = _participant(db, challenge, participant_id)
    workflows.disqualify(db, actor, challenge, participant)
    return serialize_participant(participant)


@router.get(
    "/api/challenges/{challenge_id}/participants/{participant_id}/attempts",
    response_model=list[AttemptOut],
)
def list_attempts(
    challenge_id: str,
    participant_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    challenge = _visible_challenge(db, challenge_id, actor)
    participant = _participant(db, challenge, participant_id)
    require(actor, Action.SELECT, challenge_attempt_resource(db, challenge, participant))
    attempts = (
        db.execute(
            select(ChallengeAttempt)
            .where(ChallengeAttempt.participant_id == participant.id)
            .order_by(ChallengeAttempt.attempt_date.asc())
        )
        .scalars()
        .all()
    )
    return [serialize_attempt(attempt) for attempt in attempts]


@router.post(
    "/api/challenges/{challenge_id}/participants/{participant_id}/attempts",
    response_model=AttemptOut,
)
def submit_attempt(
    challenge_id: str,
    participant_id: str,
    payload: AttemptCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    challenge = _visible_challenge(db, challenge_id, actor)
    participant = _participant(db, challenge, participant_id)
    attempt = workflows.submit_attempt(
        db, actor, challenge, participant, payload.score, payload.evidence, payload.notes
    )
    return serialize_attempt(attempt)


@router.post("/api/challenges/{challenge_id}/attempts/{attempt_id}/verify", response_model=AttemptOut)
def verify_attempt(
    challenge_id: str,
    attempt_id: str,
    payload: AttemptVerify,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    challenge = _visible_challenge(db, challenge_id, actor)
    attempt = get_or_404(db, ChallengeAttempt, attempt_id, "Attempt")
    participant = _participant(db, challenge, attempt.participant_id)
    workflows.verify_attempt(db, actor, challenge, participant, attempt, payload.verified)
    return serialize_attempt(attempt)
