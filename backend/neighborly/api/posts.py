from fastapi import APIRouter, Depends
from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session

from ..deps import get_actor, get_db
from ..errors import NotFoundError, ValidationError
from ..models import ApprovalStatus, Challenge, InteractionType, Post, PostInteraction
from ..policy import Action, Actor, can_perform, require
from ..schemas import ApprovalDecision, InteractionCreate, InteractionOut, PostCreate, PostOut
from ..services import (
    get_or_404,
    home_society,
    interaction_resource,
    post_resource,
    serialize_interaction,
    serialize_post,
)
from ..workflows import decide_approval, initial_approval_status

router = APIRouter()


@router.get("/api/posts", response_model=list[PostOut])
def list_posts(
    society_id: str | None = None,
    global_only: bool = False,
    limit: int = 20,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    stmt = select(Post).where(
        or_(Post.approval_status == ApprovalStatus.APPROVED, Post.user_id == actor.id)
    )
    if global_only:
        stmt = stmt.where(Post.is_global == True)  # noqa: E712
    else:
        society = society_id or actor.society
        stmt = stmt.where(or_(Post.society_id == society, Post.is_global == True))  # noqa: E712
    posts = db.execute(stmt.order_by(Post.created_at.desc()).limit(max(1, min(limit, 100)))).scalars().all()
    return [
        serialize_post(db, post)
        for post in posts
        if can_perform(actor, Action.SELECT, post_resource(post))
    ]


@router.get("/api/posts/pending", response_model=list[PostOut])
def moderation_queue(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    posts = (
        db.execute(
            select(Post)
            .where(
                Post.approval_status == ApprovalStatus.PENDING,
                Post.society_id == actor.society,
            )
            .order_by(Post.created_at.asc())
        )
        .scalars()
        .all()
    )
    return [
        serialize_post(db, post)
        for post in posts
        if can_perform(actor, Action.UPDATE, post_resource(post))
    ]


@router.post("/api/posts", response_model=PostOut)
def create_post(
    payload: PostCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    post = Post(
        user_id=actor.id,
        society_id=home_society(actor, payload.society_id),
        title=payload.title,
        content=payload.content,
        image_urls=payload.image_urls,
        is_global=payload.is_global,
        approval_status=ApprovalStatus.PENDING,
    )
    require(actor, Action.INSERT, post_resource(post), "Only verified residents can post")
    post.approval_status = initial_approval_status(actor.role)
    db.add(post)
    db.flush()
    db.refresh(post)
    return serialize_post(db, post)


@router.get("/api/posts/{post_id}", response_model=PostOut)
def get_post(
    post_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    post = get_or_404(db, Post, post_id, "Post")
    require(actor, Action.SELECT, post_resource(post), "Post is awaiting approval")
    return serialize_post(db, post)


@router.delete("/api/posts/{post_id}")
def delete_post(
    post_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    post = get_or_404(db, Post, post_id, "Post")
    require(actor, Action.DELETE, post_resource(post))
    db.execute(delete(PostInteraction).where(PostInteraction.post_id == post.id))
    db.execute(delete(Challenge).where(Challenge.post_id == post.id))
    db.delete(post)
    return {"status": "deleted"}


@router.post("/api/posts/{post_id}/approval", response_model=PostOut)
def moderate_post(
    post_id: str,
    payload: ApprovalDecision,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    post = get_or_404(db, Post, post_id, "Post")
    decide_approval(db, actor, post, post_resource(post), payload.status, payload.notes)
    return serialize_post(db, post)


@router.get("/api/posts/{post_id}/interactions", response_model=list[InteractionOut])
def list_interactions(
    post_id: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    post = get_or_404(db, Post, post_id, "Post")
    require(actor, Action.SELECT, interaction_resource(post, actor.id), "Post is awaiting approval")
    interactions = (
        db.execute(
            select(PostInteraction)
            .where(PostInteraction.post_id == post.id)
            .order_by(PostInteraction.created_at.asc())
        )
        .scalars()
        .all()
    )
    return [serialize_interaction(interaction) for interaction in interactions]


@router.post("/api/posts/{post_id}/interactions", response_model=InteractionOut)
def create_interaction(
    post_id: str,
    payload: InteractionCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    post = get_or_404(db, Post, post_id, "Post")
    require(actor, Action.INSERT, interaction_resource(post, actor.id))

    if payload.parent_id:
        parent = db.get(PostInteraction, payload.parent_id)
        if not parent or parent.post_id != post.id:
            raise NotFoundError("Parent comment not found")
        if parent.type is not InteractionType.COMMENT:
            raise ValidationError("Replies must target a comment")

    if payload.type is InteractionType.LIKE:
        existing = db.execute(
            select(PostInteraction).where(
                PostInteraction.post_id == post.id,
                PostInteraction.user_id == actor.id,
                PostInteraction.type == InteractionType.LIKE,
            )
        ).scalar_one_or_none()
        if existing:
            return serialize_interaction(existing)

    interaction = PostInteraction(
        post_id=post.id,
        user_id=actor.id,
        type=payload.type,
        content=payload.content,
        parent_id=payload.parent_id,
    )
    db.add(interaction)
    db.flush()
    db.refresh(interaction)
    return serialize_interaction(interaction)
