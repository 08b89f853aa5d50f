import logging
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from .api import auth, challenges, events, leaderboard, posts, tournaments, users
from .auth_utils import hash_password
from .config import CORS_ORIGIN, DATABASE_URL, LOG_LEVEL, SEED_DEMO
from .db import Database
from .errors import NeighborlyError
from .models import (
    ApprovalStatus,
    Challenge,
    ChallengeStatus,
    Event,
    Post,
    Role,
    ScheduleStatus,
    Tournament,
    User,
    Visibility,
    utcnow,
)

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Neighborly community API (FastAPI + SQLAlchemy)")
app.state.database = Database(DATABASE_URL)

# CORS for the mobile dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=[CORS_ORIGIN],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(users.router)
app.include_router(posts.router)
app.include_router(events.router)
app.include_router(tournaments.router)
app.include_router(challenges.router)
app.include_router(leaderboard.router)


@app.exception_handler(NeighborlyError)
async def neighborly_error_handler(request: Request, exc: NeighborlyError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.on_event("startup")
def startup() -> None:
    database: Database = app.state.database
    database.open()
    database.create_all()
    if SEED_DEMO:
        with database.session() as session:
            seed_data(session)


@app.on_event("shutdown")
def shutdown() -> None:
    app.state.database.close()


@app.get("/api/health")
def health():
    healthy = app.state.database.is_healthy()
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "ok" if healthy else "unavailable"},
    )


DEMO_PASSWORD = "neighborly123"

DEMO_USERS = [
    ("seed-president", "president@mapleheights.org", "Priya Raman", "Maple Heights", Role.PRESIDENT),
    ("seed-treasurer", "treasurer@mapleheights.org", "Tom Becker", "Maple Heights", Role.TREASURER),
    ("seed-member", "member@mapleheights.org", "Maria Lopez", "Maple Heights", Role.MEMBER),
    ("seed-tenant", "tenant@mapleheights.org", "Ken Ito", "Maple Heights", Role.TENANT),
    ("seed-unverified", "newcomer@mapleheights.org", "Nia Okafor", "Maple Heights", Role.UNVERIFIED),
    ("seed-oak-president", "president@oakridge.org", "Omar Haddad", "Oak Ridge", Role.PRESIDENT),
]


def seed_data(session: Session) -> None:
    password_hash = None
    for user_id, email, name, society, role in DEMO_USERS:
        if session.get(User, user_id):
            continue
        password_hash = password_hash or hash_password(DEMO_PASSWORD)
        session.add(
            User(
                id=user_id,
                email=email,
                display_name=name,
                password_hash=password_hash,
                society=society,
                role=role,
            )
        )
    session.flush()

    welcome = session.execute(select(Post).where(Post.title == "Welcome to Neighborly!")).scalar_one_or_none()
    if not welcome:
        welcome = Post(
            user_id="seed-president",
            society_id="Maple Heights",
            title="Welcome to Neighborly!",
            content="Introduce yourself below and check the events tab for this month's meetups.",
            is_global=False,
            approval_status=ApprovalStatus.APPROVED,
        )
        session.add(welcome)
        session.add(
            Post(
                user_id="seed-member",
                society_id="Maple Heights",
                title="Lost cat",
                content="Grey tabby spotted near block C, answers to Miso.",
                approval_status=ApprovalStatus.PENDING,
            )
        )
        session.flush()

    if not session.execute(select(Event).where(Event.title == "Community Clean-up")).first():
        session.add(
            Event(
                title="Community Clean-up",
                description="Gloves and bags provided.",
                society_id="Maple Heights",
                location="Central Courtyard",
                date=utcnow() + timedelta(days=3),
                organizer_id="seed-treasurer",
                status=ScheduleStatus.SCHEDULED,
                approval_status=ApprovalStatus.APPROVED,
            )
        )

    if not session.execute(select(Tournament).where(Tournament.name == "Neighborly Chess Tournament")).first():
        session.add(
            Tournament(
                name="Neighborly Chess Tournament",
                description="Swiss rounds, rapid time control.",
                society_id="Maple Heights",
                start_date=utcnow() + timedelta(days=10),
                end_date=utcnow() + timedelta(days=11),
                organizer_id="seed-president",
                status=ScheduleStatus.SCHEDULED,
                max_participants=16,
                approval_status=ApprovalStatus.APPROVED,
            )
        )

    if not session.execute(select(Challenge).where(Challenge.title == "10k steps a day")).first():
        welcome.has_challenge = True
        session.add(
            Challenge(
                post_id=welcome.id,
                creator_id="seed-president",
                title="10k steps a day",
                description="Log your daily steps for a week.",
                status=ChallengeStatus.ACTIVE,
                criteria="Highest verified daily step count",
                reward="Bragging rights at the next meetup",
                expiry_date=utcnow() + timedelta(days=7),
                visibility=Visibility.PUBLIC,
            )
        )
    session.flush()
