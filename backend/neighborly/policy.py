"""Row level access policy.

``can_perform(actor, action, resource)`` walks an ordered rule table and the
first rule whose resource type and action match decides. There is no default
allow: an action without a matching rule is denied, and a rule that fails
while evaluating denies as well.

Resources are small frozen views carrying exactly the columns a rule reads,
so callers build them from ORM rows (see ``neighborly.services``) and the
engine never touches the database.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable

from .errors import AuthorizationError
from .models import ApprovalStatus, Role, User, Visibility

logger = logging.getLogger(__name__)

LEADERSHIP = frozenset({Role.PRESIDENT, Role.TREASURER})
RESIDENTS = frozenset({Role.MEMBER, Role.TENANT})


class Action(str, enum.Enum):
    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Actor:
    id: str
    role: Role
    society: str | None = None

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(id=user.id, role=Role(user.role), society=user.society)


@dataclass(frozen=True)
class UserResource:
    id: str
    society: str | None


@dataclass(frozen=True)
class ProfileResource:
    """A user's own profile and credentials, as opposed to their role."""

    user_id: str


@dataclass(frozen=True)
class PostResource:
    user_id: str
    approval_status: ApprovalStatus
    society_id: str | None = None


@dataclass(frozen=True)
class InteractionResource:
    user_id: str
    post: PostResource


@dataclass(frozen=True)
class EventResource:
    organizer_id: str
    approval_status: ApprovalStatus
    society_id: str | None = None


@dataclass(frozen=True)
class EventParticipantResource:
    user_id: str
    event: EventResource


@dataclass(frozen=True)
class TournamentResource:
    organizer_id: str
    approval_status: ApprovalStatus
    society_id: str | None = None


@dataclass(frozen=True)
class TournamentParticipantResource:
    user_id: str
    tournament: TournamentResource


@dataclass(frozen=True)
class TournamentResultResource:
    tournament: TournamentResource


@dataclass(frozen=True)
class ChallengeResource:
    creator_id: str
    visibility: Visibility
    creator_society: str | None = None


@dataclass(frozen=True)
class ChallengeRequestResource:
    requester_id: str
    challenge: ChallengeResource


@dataclass(frozen=True)
class ChallengeParticipantResource:
    user_id: str
    challenge: ChallengeResource


@dataclass(frozen=True)
class ChallengeAttemptResource:
    participant_user_id: str
    challenge: ChallengeResource


def _same_society(actor: Actor, society: str | None) -> bool:
    return actor.society is not None and actor.society == society


def _is_society_president(actor: Actor, society: str | None) -> bool:
    return actor.role is Role.PRESIDENT and _same_society(actor, society)


def _post_visible(actor: Actor, post: PostResource) -> bool:
    return post.approval_status is ApprovalStatus.APPROVED or actor.id == post.user_id


def _challenge_visible(actor: Actor, challenge: ChallengeResource) -> bool:
    if challenge.visibility is Visibility.PUBLIC:
        return True
    if challenge.visibility is Visibility.SOCIETY and _same_society(actor, challenge.creator_society):
        return True
    return actor.id == challenge.creator_id


def _can_verify(actor: Actor, attempt: ChallengeAttemptResource) -> bool:
    challenge = attempt.challenge
    return actor.id == challenge.creator_id or _is_society_president(actor, challenge.creator_society)


@dataclass(frozen=True)
class Rule:
    resource_type: type
    action: Action
    check: Callable[[Actor, Any], bool]


RULES: tuple[Rule, ...] = (
    # posts
    Rule(PostResource, Action.SELECT, _post_visible),
    Rule(PostResource, Action.INSERT, lambda a, r: a.role in LEADERSHIP or a.role in RESIDENTS),
    Rule(PostResource, Action.UPDATE, lambda a, r: a.role is Role.PRESIDENT),
    Rule(
        PostResource,
        Action.DELETE,
        lambda a, r: a.id == r.user_id or _is_society_president(a, r.society_id),
    ),
    Rule(InteractionResource, Action.SELECT, lambda a, r: _post_visible(a, r.post)),
    Rule(InteractionResource, Action.INSERT, lambda a, r: a.id == r.user_id and _post_visible(a, r.post)),
    Rule(InteractionResource, Action.DELETE, lambda a, r: a.id == r.user_id),
    # events
    Rule(
        EventResource,
        Action.SELECT,
        lambda a, r: r.approval_status is ApprovalStatus.APPROVED or a.id == r.organizer_id,
    ),
    Rule(EventResource, Action.INSERT, lambda a, r: a.role in LEADERSHIP),
    Rule(EventResource, Action.UPDATE, lambda a, r: a.role is Role.PRESIDENT),
    Rule(
        EventResource,
        Action.DELETE,
        lambda a, r: a.id == r.organizer_id or _is_society_president(a, r.society_id),
    ),
    Rule(EventParticipantResource, Action.SELECT, lambda a, r: True),
    Rule(EventParticipantResource, Action.INSERT, lambda a, r: a.id == r.user_id),
    Rule(EventParticipantResource, Action.UPDATE, lambda a, r: a.id == r.user_id),
    # tournaments
    Rule(
        TournamentResource,
        Action.SELECT,
        lambda a, r: r.approval_status is ApprovalStatus.APPROVED or a.id == r.organizer_id,
    ),
    Rule(TournamentResource, Action.INSERT, lambda a, r: a.role in LEADERSHIP),
    Rule(TournamentResource, Action.UPDATE, lambda a, r: a.role is Role.PRESIDENT),
    Rule(TournamentParticipantResource, Action.SELECT, lambda a, r: True),
    Rule(TournamentParticipantResource, Action.INSERT, lambda a, r: a.id == r.user_id),
    Rule(
        TournamentParticipantResource,
        Action.UPDATE,
        lambda a, r: a.id == r.tournament.organizer_id or a.role is Role.PRESIDENT,
    ),
    Rule(TournamentResultResource, Action.SELECT, lambda a, r: True),
    Rule(
        TournamentResultResource,
        Action.INSERT,
        lambda a, r: a.id == r.tournament.organizer_id or a.role is Role.PRESIDENT,
    ),
    # challenges
    Rule(ChallengeResource, Action.SELECT, _challenge_visible),
    Rule(ChallengeResource, Action.INSERT, lambda a, r: a.id == r.creator_id),
    Rule(ChallengeResource, Action.UPDATE, lambda a, r: a.id == r.creator_id),
    Rule(
        ChallengeRequestResource,
        Action.SELECT,
        lambda a, r: a.id == r.requester_id or a.id == r.challenge.creator_id,
    ),
    Rule(ChallengeRequestResource, Action.INSERT, lambda a, r: a.id == r.requester_id),
    Rule(ChallengeRequestResource, Action.UPDATE, lambda a, r: a.id == r.challenge.creator_id),
    Rule(ChallengeParticipantResource, Action.SELECT, lambda a, r: True),
    Rule(ChallengeParticipantResource, Action.INSERT, lambda a, r: a.id == r.challenge.creator_id),
    Rule(
        ChallengeParticipantResource,
        Action.UPDATE,
        lambda a, r: a.id == r.user_id or a.id == r.challenge.creator_id,
    ),
    Rule(
        ChallengeAttemptResource,
        Action.SELECT,
        lambda a, r: a.id == r.participant_user_id or _can_verify(a, r),
    ),
    Rule(ChallengeAttemptResource, Action.INSERT, lambda a, r: a.id == r.participant_user_id),
    Rule(ChallengeAttemptResource, Action.UPDATE, _can_verify),
    # users
    Rule(UserResource, Action.SELECT, lambda a, r: True),
    Rule(
        UserResource,
        Action.INSERT,
        lambda a, r: (a.role in LEADERSHIP or a.role is Role.MEMBER) and _same_society(a, r.society),
    ),
    Rule(
        UserResource,
        Action.UPDATE,
        lambda a, r: a.id != r.id and _is_society_president(a, r.society),
    ),
    # own profile and credentials; role changes stay with the President
    Rule(ProfileResource, Action.UPDATE, lambda a, r: a.id == r.user_id),
)


def can_perform(actor: Actor | None, action: Action, resource: Any) -> bool:
    if actor is None:
        return False
    for rule in RULES:
        if rule.action is not action or not isinstance(resource, rule.resource_type):
            continue
        try:
            allowed = bool(rule.check(actor, resource))
        except Exception:
            # Fail closed
            logger.warning(
                "Policy check for %s %s raised; denying",
                action.value,
                type(resource).__name__,
                exc_info=True,
            )
            return False
        if not allowed:
            logger.debug("Denied %s %s for %s", action.value, type(resource).__name__, actor.id)
        return allowed
    logger.debug("No policy for %s %s; denying", action.value, type(resource).__name__)
    return False


def require(actor: Actor | None, action: Action, resource: Any, message: str | None = None) -> None:
    if not can_perform(actor, action, resource):
        raise AuthorizationError(
            message or f"Not allowed to {action.value} {type(resource).__name__.removesuffix('Resource').lower()}"
        )
