import logging

from fastapi import APIRouter, Depends
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ..db import insert_unique
from ..deps import get_actor, get_db
from ..errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from ..models import (
    UQ_TOURNAMENT_PARTICIPANT,
    UQ_TOURNAMENT_RESULT,
    ApprovalStatus,
    ScheduleStatus,
    Tournament,
    TournamentParticipant,
    TournamentResult,
)
from ..policy import Action, Actor, can_perform, require
from ..schemas import (
    ApprovalDecision,
    StandingOut,
    TournamentCreate,
    TournamentOut,
    TournamentParticipantOut,
    TournamentResultCreate,
    TournamentResultOut,
)
from ..services import (
    approved_registration_count,
    get_or_404,
    home_society,
    serialize_result,
    serialize_tournament,
    serialize_tournament_participant,
    tournament_participant_resource,
    tournament_resource,
    tournament_result_resource,
    tournament_standings,
)
from ..workflows import APPROVAL_TRANSITIONS, decide_approval, initial_approval_status, transition

logger = logging.getLogger(__name__)

router = APIRouter()


def _visible_tournament(db: Session, tournament_id: str, actor: Actor) -> Tournament:
    tournament = get_or_404(db, Tournament, tournament_id, "Tournament")
    require(actor, Action.SELECT, tournament_resource(tournament), "Tournament is awaiting approval")
    return tournament


def _ensure_capacity(db: Session, tournament: Tournament) -> None:
    if tournament.max_participants and approved_registration_count(db, tournament.id) >= tournament.max_participants:
        raise ConflictError("Tournament is full", constraint="tournaments.max_participants")


@router.get("/api/tournaments", response_model=list[TournamentOut])
def list_tournaments(
    status: ScheduleStatus | None = None,
    society_id: str | None = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    stmt = select(Tournament).where(
        or_(Tournament.approval_status == ApprovalStatus.APPROVED, Tournament.organizer_id == actor.id)
    )
    if status:
        stmt = stmt.where(Tournament.status == status)
    if society_id:
        stmt = stmt.where(
            or_(Tournament.society_id == society_id, Tournament.is_intersociety == True)  # noqa: E712
        )
    tournaments = db.execute(stmt.order_by(Tournament.start_date.asc())).scalars().all()
    return [
        serialize_tournament(db, tournament)
        for tournament in tournaments
        if can_perform(actor, Action.SELECT, tournament_resource(tournament))
    ]


@router.post("/api/tournaments", response_model=TournamentOut)
def create_tournament(
    payload: TournamentCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    society_id = home_society(actor, payload.society_id)
    if not society_id:
        raise ValidationError("society_id is required")
    tournament = Tournament(
        **payload.model_dump(exclude={"society_id"}),
        society_id=society_id,
        organizer_id=actor.id,
        status=ScheduleStatus.SCHEDULED,
        approval_status=ApprovalStatus.PENDING,
    )
    require(
        actor,
        Action.INSERT,
        tournament_resource(tournament),
        "Only Presidents and Treasurers can create tournaments",
    )
    tournament.approval_status = initial_approval_status(actor.role)
    db.add(tournament)
    db.flush()
    db.refresh(tournament)
    return serialize_tournament(db, tournament)


@router.get("/api/tournaments/{tournament_id}", response_model=TournamentOut)
def get_tournament(
    tournament_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return serialize_tournament(db, _visible_tournament(db, tournament_id, actor))


@router.post("/api/tournaments/{tournament_id}/approval", response_model=TournamentOut)
def moderate_tournament(
    tournament_id: str,
    payload: ApprovalDecision,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    tournament = get_or_404(db, Tournament, tournament_id, "Tournament")
    decide_approval(db, actor, tournament, tournament_resource(tournament), payload.status, payload.notes)
    return serialize_tournament(db, tournament)


@router.post("/api/tournaments/{tournament_id}/register", response_model=TournamentParticipantOut)
def register(
    tournament_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    tournament = _visible_tournament(db, tournament_id, actor)
    require(actor, Action.INSERT, tournament_participant_resource(tournament, actor.id))
    if tournament.approval_status is not ApprovalStatus.APPROVED:
        raise AuthorizationError("Tournament is not open for registration")
    if tournament.status is not ScheduleStatus.SCHEDULED:
        raise AuthorizationError(f"Tournament is {tournament.status.value}")
    _ensure_capacity(db, tournament)

    participant = TournamentParticipant(
        tournament_id=tournament.id,
        user_id=actor.id,
        registration_status=ApprovalStatus.PENDING,
    )
    insert_unique(db, participant, UQ_TOURNAMENT_PARTICIPANT, "Already registered for this tournament")
    db.refresh(participant)
    logger.info("[EMAIL] to=%s subj=Registration received body=You signed up for '%s'", actor.id, tournament.name)
    return serialize_tournament_participant(participant)


@router.get("/api/tournaments/{tournament_id}/registrations", response_model=list[TournamentParticipantOut])
def list_registrations(
    tournament_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    tournament = _visible_tournament(db, tournament_id, actor)
    participants = (
        db.execute(
            select(TournamentParticipant)
            .where(TournamentParticipant.tournament_id == tournament.id)
            .order_by(TournamentParticipant.created_at.asc())
        )
        .scalars()
        .all()
    )
    return [
        serialize_tournament_participant(p)
        for p in participants
        if can_perform(actor, Action.SELECT, tournament_participant_resource(tournament, p.user_id))
    ]


@router.post(
    "/api/tournaments/{tournament_id}/registrations/{user_id}/decision",
    response_model=TournamentParticipantOut,
)
def decide_registration(
    tournament_id: str,
    user_id: str,
    payload: ApprovalDecision,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    tournament = get_or_404(db, Tournament, tournament_id, "Tournament")
    require(
        actor,
        Action.UPDATE,
        tournament_participant_resource(tournament, user_id),
        "Only the organizer or the President can decide registrations",
    )
    participant = db.execute(
        select(TournamentParticipant).where(
            TournamentParticipant.tournament_id == tournament.id,
            TournamentParticipant.user_id == user_id,
        )
    ).scalar_one_or_none()
    if not participant:
        raise NotFoundError("Registration not found")
    if payload.status is ApprovalStatus.APPROVED:
        _ensure_capacity(db, tournament)
    transition(
        db,
        participant,
        "registration_status",
        APPROVAL_TRANSITIONS,
        payload.status,
        "registration",
    )
    return serialize_tournament_participant(participant)


@router.get("/api/tournaments/{tournament_id}/results", response_model=TournamentResultOut)
def get_results(
    tournament_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    tournament = _visible_tournament(db, tournament_id, actor)
    require(actor, Action.SELECT, tournament_result_resource(tournament))
    result = db.execute(
        select(TournamentResult).where(TournamentResult.tournament_id == tournament.id)
    ).scalar_one_or_none()
    if not result:
        raise NotFoundError("No results recorded yet")
    return serialize_result(result)


@router.post("/api/tournaments/{tournament_id}/results", response_model=TournamentResultOut)
def record_results(
    tournament_id: str,
    payload: TournamentResultCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    tournament = _visible_tournament(db, tournament_id, actor)
    require(
        actor,
        Action.INSERT,
        tournament_result_resource(tournament),
        "Only the organizer or the President can record results",
    )
    entrants = set(
        db.execute(
            select(TournamentParticipant.user_id).where(
                TournamentParticipant.tournament_id == tournament.id,
                TournamentParticipant.registration_status == ApprovalStatus.APPROVED,
            )
        ).scalars()
    )
    players = {payload.winner_id}
    if payload.runner_up_id:
        players.add(payload.runner_up_id)
    for match in payload.matches:
        players.update({match.player1, match.player2})
    unknown = players - entrants
    if unknown:
        raise ValidationError(f"Not registered for this tournament: {', '.join(sorted(unknown))}")
    if payload.runner_up_id == payload.winner_id:
        raise ValidationError("Winner and runner-up must differ")

    result = TournamentResult(
        tournament_id=tournament.id,
        winner_id=payload.winner_id,
        runner_up_id=payload.runner_up_id,
        matches=[match.model_dump() for match in payload.matches],
    )
    insert_unique(db, result, UQ_TOURNAMENT_RESULT, "Results already recorded for this tournament")
    tournament.status = ScheduleStatus.COMPLETED
    db.flush()
    db.refresh(result)
    return serialize_result(result)


@router.get("/api/tournaments/{tournament_id}/standings", response_model=list[StandingOut])
def standings(
    tournament_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    tournament = _visible_tournament(db, tournament_id, actor)
    return tournament_standings(db, tournament)
