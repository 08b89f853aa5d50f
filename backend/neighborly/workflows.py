"""State machines for moderated content and challenges.

Every transition is checked against a transition table first and then
written as a single-row ``UPDATE ... WHERE <column> = <expected>``. A
transition the table forbids is an ``AuthorizationError``; an update that
finds the row already moved on by someone else is a ``ConflictError``.
"""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .db import insert_unique
from .errors import AuthorizationError, ConflictError, ValidationError
from .models import (
    UQ_CHALLENGE_PARTICIPANT,
    UQ_CHALLENGE_REQUESTER,
    ApprovalStatus,
    Challenge,
    ChallengeAttempt,
    ChallengeParticipant,
    ChallengeRequest,
    ChallengeStatus,
    ParticipantStatus,
    RequestStatus,
    Role,
    utcnow,
)
from .policy import Action, Actor, require
from .services import (
    challenge_attempt_resource,
    challenge_participant_resource,
    challenge_request_resource,
    challenge_resource,
    seated_participant_count,
)

logger = logging.getLogger(__name__)

APPROVAL_TRANSITIONS = {
    ApprovalStatus.PENDING: frozenset({ApprovalStatus.APPROVED, ApprovalStatus.REJECTED}),
    ApprovalStatus.APPROVED: frozenset(),
    ApprovalStatus.REJECTED: frozenset(),
}

CHALLENGE_TRANSITIONS = {
    ChallengeStatus.ACTIVE: frozenset({ChallengeStatus.COMPLETED, ChallengeStatus.EXPIRED}),
    ChallengeStatus.COMPLETED: frozenset(),
    ChallengeStatus.EXPIRED: frozenset(),
}

REQUEST_TRANSITIONS = {
    RequestStatus.PENDING: frozenset({RequestStatus.ACCEPTED, RequestStatus.REJECTED}),
    RequestStatus.ACCEPTED: frozenset(),
    RequestStatus.REJECTED: frozenset(),
}

PARTICIPANT_TRANSITIONS = {
    ParticipantStatus.ACTIVE: frozenset(
        {ParticipantStatus.WITHDRAWN, ParticipantStatus.COMPLETED, ParticipantStatus.DISQUALIFIED}
    ),
    ParticipantStatus.WITHDRAWN: frozenset(),
    ParticipantStatus.COMPLETED: frozenset(),
    ParticipantStatus.DISQUALIFIED: frozenset(),
}

# Approval state a new post, event or tournament starts in, by author role.
# None means the role may not publish at all.
ENTRY_APPROVAL: dict[Role, ApprovalStatus | None] = {
    Role.PRESIDENT: ApprovalStatus.APPROVED,
    Role.TREASURER: ApprovalStatus.APPROVED,
    Role.MEMBER: ApprovalStatus.PENDING,
    Role.TENANT: ApprovalStatus.PENDING,
    Role.UNVERIFIED: None,
}


def initial_approval_status(role: Role) -> ApprovalStatus:
    status = ENTRY_APPROVAL[Role(role)]
    if status is None:
        raise AuthorizationError(f"{Role(role).value} users cannot publish content")
    return status


def ensure_transition(table: dict, current, target, label: str) -> None:
    if target not in table[current]:
        raise AuthorizationError(f"Cannot move {label} from {current.value} to {target.value}")


def compare_and_set(db: Session, model, row_id: str, column: str, expected, new, **values: Any) -> None:
    """Write ``column = new`` only while the row still holds ``expected``."""
    result = db.execute(
        update(model)
        .where(model.id == row_id, getattr(model, column) == expected)
        .values({column: new, **values})
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError(
            f"{model.__tablename__} row changed while updating {column}",
            constraint=f"{model.__tablename__}.{column}",
        )


def transition(db: Session, row, column: str, table: dict, target, label: str, **values: Any):
    current = getattr(row, column)
    ensure_transition(table, current, target, label)
    compare_and_set(db, type(row), row.id, column, current, target, **values)
    db.refresh(row)
    logger.info("%s %s: %s -> %s", label, row.id, current.value, target.value)
    return row


# Approval workflow


def decide_approval(db: Session, actor: Actor, row, resource, decision: ApprovalStatus, notes: str | None = None):
    """Move a post, event or tournament out of ``pending``."""
    require(actor, Action.UPDATE, resource, "Only the society President can moderate")
    values = {}
    if notes is not None and hasattr(type(row), "approval_notes"):
        values["approval_notes"] = notes
    label = type(row).__tablename__.rstrip("s")
    return transition(db, row, "approval_status", APPROVAL_TRANSITIONS, decision, label, **values)


# Challenge lifecycle


def refresh_expiry(db: Session, challenge: Challenge, now: datetime | None = None) -> Challenge:
    """Persist ``active -> expired`` once the expiry date has passed."""
    now = now or utcnow()
    if challenge.status is ChallengeStatus.ACTIVE and now > challenge.expiry_date:
        db.execute(
            update(Challenge)
            .where(Challenge.id == challenge.id, Challenge.status == ChallengeStatus.ACTIVE)
            .values(status=ChallengeStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        db.refresh(challenge)
        logger.info("challenge %s expired", challenge.id)
    return challenge


def ensure_active(db: Session, challenge: Challenge) -> None:
    refresh_expiry(db, challenge)
    if challenge.status is not ChallengeStatus.ACTIVE:
        raise AuthorizationError(f"Challenge is {challenge.status.value}")


def request_to_join(db: Session, actor: Actor, challenge: Challenge, message: str | None = None) -> ChallengeRequest:
    require(actor, Action.SELECT, challenge_resource(db, challenge), "Challenge not visible")
    require(actor, Action.INSERT, challenge_request_resource(db, challenge, actor.id))
    ensure_active(db, challenge)
    if actor.id == challenge.creator_id:
        raise ValidationError("Creators take part in their own challenge without a request")
    request = ChallengeRequest(
        challenge_id=challenge.id,
        requester_id=actor.id,
        message=message,
        status=RequestStatus.PENDING,
    )
    insert_unique(db, request, UQ_CHALLENGE_REQUESTER, "Already requested to join this challenge")
    db.refresh(request)
    return request


def decide_request(
    db: Session, actor: Actor, challenge: Challenge, request: ChallengeRequest, accept: bool
) -> ChallengeParticipant | None:
    """Accept or reject a join request.

    Accepting marks the request and seats the requester in the same
    transaction, so a failed seat leaves the request pending.
    """
    require(actor, Action.UPDATE, challenge_request_resource(db, challenge, request.requester_id))
    ensure_active(db, challenge)
    if not accept:
        transition(db, request, "status", REQUEST_TRANSITIONS, RequestStatus.REJECTED, "challenge request")
        return None

    require(actor, Action.INSERT, challenge_participant_resource(db, challenge, request.requester_id))
    transition(db, request, "status", REQUEST_TRANSITIONS, RequestStatus.ACCEPTED, "challenge request")
    # Count seats only once this transaction holds a write lock on the
    # challenge, so concurrent accepts queue up behind each other
    db.execute(select(Challenge.id).where(Challenge.id == challenge.id).with_for_update())
    if challenge.max_participants and seated_participant_count(db, challenge.id) >= challenge.max_participants:
        raise ConflictError("Challenge is full", constraint="challenges.max_participants")

    participant = ChallengeParticipant(
        challenge_id=challenge.id,
        user_id=request.requester_id,
        status=ParticipantStatus.ACTIVE,
    )
    insert_unique(db, participant, UQ_CHALLENGE_PARTICIPANT, "Requester already takes part in this challenge")
    db.refresh(participant)
    return participant


def withdraw(db: Session, actor: Actor, challenge: Challenge, participant: ChallengeParticipant):
    require(actor, Action.UPDATE, challenge_participant_resource(db, challenge, participant.user_id))
    if actor.id != participant.user_id:
        raise AuthorizationError("Only participants can withdraw themselves")
    return transition(db, participant, "status", PARTICIPANT_TRANSITIONS, ParticipantStatus.WITHDRAWN, "participant")


def disqualify(db: Session, actor: Actor, challenge: Challenge, participant: ChallengeParticipant):
    require(actor, Action.UPDATE, challenge_participant_resource(db, challenge, participant.user_id))
    if actor.id != challenge.creator_id:
        raise AuthorizationError("Only the challenge creator can disqualify participants")
    return transition(
        db, participant, "status", PARTICIPANT_TRANSITIONS, ParticipantStatus.DISQUALIFIED, "participant"
    )


def submit_attempt(
    db: Session,
    actor: Actor,
    challenge: Challenge,
    participant: ChallengeParticipant,
    score: float,
    evidence: dict | None = None,
    notes: str | None = None,
) -> ChallengeAttempt:
    require(actor, Action.INSERT, challenge_attempt_resource(db, challenge, participant))
    ensure_active(db, challenge)
    if participant.status is not ParticipantStatus.ACTIVE:
        raise AuthorizationError(f"Participant is {participant.status.value}")
    attempt = ChallengeAttempt(
        participant_id=participant.id,
        score=score,
        evidence=evidence or {},
        notes=notes,
        verified=False,
    )
    db.add(attempt)
    db.flush()
    db.refresh(attempt)
    return attempt


def verify_attempt(
    db: Session,
    actor: Actor,
    challenge: Challenge,
    participant: ChallengeParticipant,
    attempt: ChallengeAttempt,
    verified: bool = True,
) -> ChallengeAttempt:
    """Flip ``verified`` from false to true. The flag never goes back."""
    require(
        actor,
        Action.UPDATE,
        challenge_attempt_resource(db, challenge, participant),
        "Only the challenge creator or a society President can verify attempts",
    )
    if not verified:
        raise AuthorizationError("Verified attempts cannot be unverified")
    # Scores are settled at completion; later verifications would never count
    ensure_active(db, challenge)
    if participant.status is not ParticipantStatus.ACTIVE:
        raise AuthorizationError(f"Participant is {participant.status.value}")
    if attempt.verified:
        raise AuthorizationError("Attempt is already verified")
    compare_and_set(
        db,
        ChallengeAttempt,
        attempt.id,
        "verified",
        False,
        True,
        verified_by=actor.id,
        verified_at=utcnow(),
    )
    db.refresh(attempt)
    logger.info("attempt %s verified by %s", attempt.id, actor.id)
    return attempt


def complete_challenge(db: Session, actor: Actor, challenge: Challenge) -> Challenge:
    """Close a challenge and rank its active participants.

    Each active participant is completed with their best verified score
    (0 when nothing was verified) and ranked by it, ties sharing a rank.
    """
    require(actor, Action.UPDATE, challenge_resource(db, challenge), "Only the challenge creator can complete it")
    refresh_expiry(db, challenge)
    transition(db, challenge, "status", CHALLENGE_TRANSITIONS, ChallengeStatus.COMPLETED, "challenge")

    best = dict(
        db.execute(
            select(ChallengeAttempt.participant_id, func.max(ChallengeAttempt.score))
            .join(ChallengeParticipant, ChallengeParticipant.id == ChallengeAttempt.participant_id)
            .where(
                ChallengeParticipant.challenge_id == challenge.id,
                ChallengeAttempt.verified.is_(True),
            )
            .group_by(ChallengeAttempt.participant_id)
        ).all()
    )
    participants = (
        db.execute(
            select(ChallengeParticipant).where(
                ChallengeParticipant.challenge_id == challenge.id,
                ChallengeParticipant.status == ParticipantStatus.ACTIVE,
            )
        )
        .scalars()
        .all()
    )
    ordered = sorted(participants, key=lambda p: (-(best.get(p.id) or 0.0), p.joined_at))
    rank = 0
    previous = None
    for position, participant in enumerate(ordered, start=1):
        score = float(best.get(participant.id) or 0.0)
        if score != previous:
            rank = position
            previous = score
        transition(
            db,
            participant,
            "status",
            PARTICIPANT_TRANSITIONS,
            ParticipantStatus.COMPLETED,
            "participant",
            final_score=score,
            rank=rank,
        )
    return challenge
