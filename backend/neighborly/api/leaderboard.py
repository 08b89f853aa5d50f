from typing import Literal

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..deps import get_actor, get_db
from ..policy import Actor
from ..schemas import LeaderboardEntry
from ..services import leaderboard

router = APIRouter()


@router.get("/api/leaderboard", response_model=list[LeaderboardEntry])
def get_leaderboard(
    society_id: str | None = None,
    timeframe: Literal["week", "month", "year", "all"] = "month",
    limit: int = 50,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return leaderboard(db, society_id=society_id, timeframe=timeframe, limit=max(1, min(limit, 200)))
