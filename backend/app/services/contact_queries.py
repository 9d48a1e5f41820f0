from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.models.contact import Contact, ContactStatus
from app.models.user import User
from app.services.contact_store import find_relation
from app.services.errors import InvalidSearchError

SEARCH_MIN_LENGTH = 2
SEARCH_LIMIT = 20


@dataclass
class AcceptedContact:
    peer: User
    nickname: str | None
    added_at: datetime | None

    @property
    def display_name(self) -> str:
        return self.nickname or self.peer.full_name


@dataclass
class PendingRequest:
    id: int
    peer: User
    created_at: datetime


@dataclass
class PendingRequests:
    received: list[PendingRequest] = field(default_factory=list)
    sent: list[PendingRequest] = field(default_factory=list)


@dataclass
class SearchCandidate:
    user: User
    relation_status: str
    can_add: bool


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def list_accepted(db: Session, user_id: int) -> list[AcceptedContact]:
    rows = db.execute(
        select(Contact, User)
        .join(User, User.id == Contact.peer_id)
        .where(Contact.owner_id == user_id, Contact.status == ContactStatus.ACCEPTED.value)
        .order_by(Contact.accepted_at.desc(), Contact.id.desc())
    ).all()
    return [AcceptedContact(peer=peer, nickname=c.nickname, added_at=c.accepted_at) for c, peer in rows]


def _pending(db: Session, user_id: int, sent: bool) -> list[PendingRequest]:
    direction = Contact.requested_by_id == user_id if sent else Contact.requested_by_id != user_id
    rows = db.execute(
        select(Contact, User)
        .join(User, User.id == Contact.peer_id)
        .where(
            Contact.owner_id == user_id,
            Contact.status == ContactStatus.PENDING.value,
            direction,
        )
        .order_by(Contact.created_at.desc(), Contact.id.desc())
    ).all()
    return [PendingRequest(id=c.id, peer=peer, created_at=c.created_at) for c, peer in rows]


def list_pending(db: Session, user_id: int) -> PendingRequests:
    """Pending requests owned by the user, split into received and sent."""
    return PendingRequests(
        received=_pending(db, user_id, sent=False),
        sent=_pending(db, user_id, sent=True),
    )


def search_candidates(db: Session, user_id: int, query: str | None) -> list[SearchCandidate]:
    """Find users by name or email and annotate each with the caller's relation to them.

    ``can_add`` is only true when no relation of any status exists, so pending,
    accepted and blocked peers are all reported but cannot be requested again.
    """
    qv = (query or "").strip()
    if len(qv) < SEARCH_MIN_LENGTH:
        raise InvalidSearchError(f"Search text must be at least {SEARCH_MIN_LENGTH} characters")

    needle = f"%{_escape_like(qv)}%"
    users = db.execute(
        select(User)
        .where(
            User.id != user_id,
            or_(
                User.full_name.ilike(needle, escape="\\"),
                User.email.ilike(needle, escape="\\"),
            ),
        )
        .order_by(User.id)
        .limit(SEARCH_LIMIT)
    ).scalars().all()

    out: list[SearchCandidate] = []
    for u in users:
        relation = find_relation(db, user_id, u.id)
        out.append(
            SearchCandidate(
                user=u,
                relation_status=relation.status if relation else "none",
                can_add=relation is None,
            )
        )
    return out
