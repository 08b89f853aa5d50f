import logging

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db import insert_unique
from ..deps import get_actor, get_db, get_user
from ..models import UQ_USER_EMAIL, Role, User
from ..policy import Action, Actor, ProfileResource, UserResource, require
from ..schemas import ProfileUpdate, RoleChange, UserInvite, UserOut
from ..services import get_or_404, serialize_user, user_resource

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/api/users", response_model=list[UserOut])
def list_users(
    society: str | None = None,
    role: Role | None = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    stmt = select(User)
    if society:
        stmt = stmt.where(User.society == society)
    if role:
        stmt = stmt.where(User.role == role)
    users = db.execute(stmt.order_by(User.email.asc())).scalars().all()
    return [serialize_user(user) for user in users]


@router.post("/api/users", response_model=UserOut)
def invite_user(
    payload: UserInvite,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    """Add a neighbour to the actor's society. Invitees start unverified."""
    require(actor, Action.INSERT, UserResource(id="", society=actor.society), "Not allowed to invite users")
    user = User(
        email=payload.email,
        display_name=payload.display_name,
        society=actor.society,
        role=Role.UNVERIFIED,
        is_logged_in=False,
        invited_by=actor.id,
    )
    insert_unique(db, user, UQ_USER_EMAIL, "Email already registered")
    db.refresh(user)
    logger.info("%s invited %s to %s", actor.id, user.email, actor.society)
    return serialize_user(user)


@router.put("/api/users/me", response_model=UserOut)
def update_profile(
    payload: ProfileUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_user),
):
    """Edit your own display name or society.

    Roles are scoped to a society, so moving to another one starts over as
    Unverified.
    """
    require(Actor.from_user(user), Action.UPDATE, ProfileResource(user_id=user.id))
    if payload.display_name is not None:
        user.display_name = payload.display_name.strip() or None
    if payload.society is not None and payload.society != user.society:
        logger.info("%s moved from %s to %s", user.id, user.society, payload.society)
        user.society = payload.society
        user.role = Role.UNVERIFIED
    db.flush()
    db.refresh(user)
    return serialize_user(user)


@router.get("/api/users/{user_id}", response_model=UserOut)
def get_user_profile(
    user_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    user = get_or_404(db, User, user_id, "User")
    require(actor, Action.SELECT, user_resource(user))
    return serialize_user(user)


@router.post("/api/users/{user_id}/role", response_model=UserOut)
def change_role(
    user_id: str,
    payload: RoleChange,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    """Role elevation: the only way a user's role changes."""
    user = get_or_404(db, User, user_id, "User")
    require(
        actor,
        Action.UPDATE,
        user_resource(user),
        "Only the President of the user's society can change roles",
    )
    previous = user.role
    user.role = payload.role
    db.flush()
    db.refresh(user)
    logger.info("%s changed role of %s: %s -> %s", actor.id, user.id, previous.value, user.role.value)
    return serialize_user(user)
