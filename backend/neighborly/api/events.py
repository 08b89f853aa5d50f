import logging

from fastapi import APIRouter, Depends
from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session

from ..db import insert_unique
from ..deps import get_actor, get_db
from ..errors import NotFoundError, ValidationError
from ..models import UQ_EVENT_PARTICIPANT, ApprovalStatus, Event, EventParticipant, ScheduleStatus
from ..policy import Action, Actor, can_perform, require
from ..schemas import ApprovalDecision, EventCreate, EventOut, EventParticipantOut, RsvpRequest
from ..services import (
    event_participant_resource,
    event_resource,
    get_or_404,
    home_society,
    serialize_event,
    serialize_event_participant,
)
from ..workflows import decide_approval, initial_approval_status

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/api/events", response_model=list[EventOut])
def list_events(
    status: ScheduleStatus | None = None,
    society_id: str | None = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    stmt = select(Event).where(
        or_(Event.approval_status == ApprovalStatus.APPROVED, Event.organizer_id == actor.id)
    )
    if status:
        stmt = stmt.where(Event.status == status)
    if society_id:
        stmt = stmt.where(or_(Event.society_id == society_id, Event.is_intersociety == True))  # noqa: E712
    events = db.execute(stmt.order_by(Event.date.asc())).scalars().all()
    return [
        serialize_event(db, event)
        for event in events
        if can_perform(actor, Action.SELECT, event_resource(event))
    ]


@router.post("/api/events", response_model=EventOut)
def create_event(
    payload: EventCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    society_id = home_society(actor, payload.society_id)
    if not society_id:
        raise ValidationError("society_id is required")
    event = Event(
        **payload.model_dump(exclude={"society_id"}),
        society_id=society_id,
        organizer_id=actor.id,
        status=ScheduleStatus.SCHEDULED,
        approval_status=ApprovalStatus.PENDING,
    )
    require(actor, Action.INSERT, event_resource(event), "Only Presidents and Treasurers can create events")
    event.approval_status = initial_approval_status(actor.role)
    db.add(event)
    db.flush()
    db.refresh(event)
    return serialize_event(db, event)


@router.get("/api/events/{event_id}", response_model=EventOut)
def get_event(
    event_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    event = get_or_404(db, Event, event_id, "Event")
    require(actor, Action.SELECT, event_resource(event), "Event is awaiting approval")
    return serialize_event(db, event)


@router.post("/api/events/{event_id}/approval", response_model=EventOut)
def moderate_event(
    event_id: str,
    payload: ApprovalDecision,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    event = get_or_404(db, Event, event_id, "Event")
    decide_approval(db, actor, event, event_resource(event), payload.status, payload.notes)
    return serialize_event(db, event)


@router.delete("/api/events/{event_id}")
def delete_event(
    event_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    event = get_or_404(db, Event, event_id, "Event")
    require(actor, Action.DELETE, event_resource(event))
    db.execute(delete(EventParticipant).where(EventParticipant.event_id == event.id))
    db.delete(event)
    return {"status": "deleted"}


@router.get("/api/events/{event_id}/participants", response_model=list[EventParticipantOut])
def list_participants(
    event_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    event = get_or_404(db, Event, event_id, "Event")
    require(actor, Action.SELECT, event_resource(event), "Event is awaiting approval")
    participants = (
        db.execute(
            select(EventParticipant)
            .where(EventParticipant.event_id == event.id)
            .order_by(EventParticipant.created_at.asc())
        )
        .scalars()
        .all()
    )
    return [serialize_event_participant(p) for p in participants]


@router.post("/api/events/{event_id}/participants", response_model=EventParticipantOut)
def rsvp(
    event_id: str,
    payload: RsvpRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    event = get_or_404(db, Event, event_id, "Event")
    require(actor, Action.SELECT, event_resource(event), "Event is awaiting approval")
    require(actor, Action.INSERT, event_participant_resource(event, actor.id))
    participant = EventParticipant(event_id=event.id, user_id=actor.id, status=payload.status)
    insert_unique(db, participant, UQ_EVENT_PARTICIPANT, "Already responded to this event")
    db.refresh(participant)

    logger.info("[PUSH] to=%s title=RSVP recorded body=%s for '%s'", actor.id, payload.status.value, event.title)
    return serialize_event_participant(participant)


@router.put("/api/events/{event_id}/participants/me", response_model=EventParticipantOut)
def update_rsvp(
    event_id: str,
    payload: RsvpRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    event = get_or_404(db, Event, event_id, "Event")
    require(actor, Action.UPDATE, event_participant_resource(event, actor.id))
    participant = db.execute(
        select(EventParticipant).where(
            EventParticipant.event_id == event.id,
            EventParticipant.user_id == actor.id,
        )
    ).scalar_one_or_none()
    if not participant:
        raise NotFoundError("No RSVP for this event")
    participant.status = payload.status
    db.flush()
    db.refresh(participant)
    return serialize_event_participant(participant)
