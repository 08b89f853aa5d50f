from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import User
from .policy import Actor


def get_db(request: Request):
    with request.app.state.database.session() as session:
        yield session


def get_user(
    x_user_id: str | None = Header(default=None),
    x_user_email: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the acting user from the auth provider's identity headers.

    The role is always read from the stored row, never from the request.
    """
    if not x_user_id and not x_user_email:
        raise HTTPException(status_code=401, detail="User header missing")

    query = select(User)
    if x_user_id:
        query = query.where(User.id == x_user_id)
    elif x_user_email:
        query = query.where(User.email == x_user_email.strip().lower())

    user = db.execute(query).scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def get_actor(user: User = Depends(get_user)) -> Actor:
    return Actor.from_user(user)
