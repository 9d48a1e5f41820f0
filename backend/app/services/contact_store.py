"""Write side of contact relations.

A relation between users A and B is two mirrored rows in ``contacts``. Every
write here touches both rows inside a single transaction: it either commits
both or rolls back both. The unique (owner_id, peer_id) constraint is what
serializes concurrent duplicate requests; the losing transaction is rolled
back and surfaces as ``RelationExistsError``.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

from loguru import logger
from sqlalchemy import and_, case, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.contact import Contact, ContactStatus, utcnow
from app.services.errors import RelationExistsError, RelationIntegrityError


def _pair(user_a: int, user_b: int):
    return or_(
        and_(Contact.owner_id == user_a, Contact.peer_id == user_b),
        and_(Contact.owner_id == user_b, Contact.peer_id == user_a),
    )


def _is_pair_conflict(e: IntegrityError) -> bool:
    # Postgres names the constraint; SQLite names the columns.
    msg = str(e.orig).lower()
    return "uq_contact_owner_peer" in msg or "unique constraint failed: contacts.owner_id, contacts.peer_id" in msg


@contextmanager
def _atomic(db: Session) -> Iterator[None]:
    try:
        yield
        db.commit()
    except IntegrityError as e:
        db.rollback()
        if _is_pair_conflict(e):
            raise RelationExistsError("Relation already exists") from e
        raise
    except Exception:
        db.rollback()
        raise


def _check_pair_count(count: int, user_a: int, user_b: int) -> None:
    # Anything other than 0 or 2 rows means the mirrored pair is torn.
    if count not in (0, 2):
        raise RelationIntegrityError(f"Relation {user_a}<->{user_b} affected {count} row(s)")


def find_relation(db: Session, user_a: int, user_b: int) -> Contact | None:
    """Return the relation row between two users, preferring the one owned by ``user_a``."""
    return (
        db.execute(
            select(Contact)
            .where(_pair(user_a, user_b))
            .order_by(case((Contact.owner_id == user_a, 0), else_=1))
            .limit(1)
        )
        .scalars()
        .first()
    )


def create_bidirectional(
    db: Session,
    requester_id: int,
    target_id: int,
    status: ContactStatus = ContactStatus.PENDING,
) -> tuple[Contact, Contact]:
    if requester_id == target_id:
        raise ValueError("A user cannot be related to themselves")

    status = ContactStatus(status)
    now = utcnow()
    forward = Contact(
        owner_id=requester_id,
        peer_id=target_id,
        status=status.value,
        requested_by_id=requester_id,
        created_at=now,
    )
    backward = Contact(
        owner_id=target_id,
        peer_id=requester_id,
        status=status.value,
        requested_by_id=requester_id,
        created_at=now,
    )
    if status == ContactStatus.ACCEPTED:
        forward.accepted_at = now
        backward.accepted_at = now

    # Insert the row owned by the lower user id first, whoever is requesting, so
    # concurrent A->B and B->A requests collide on the same key instead of
    # deadlocking on opposite ones.
    first, second = (forward, backward) if requester_id < target_id else (backward, forward)
    with _atomic(db):
        db.add(first)
        db.flush()
        db.add(second)
        db.flush()

    logger.info("Created {} relation {} -> {}", status.value, requester_id, target_id)
    return forward, backward


def update_bidirectional_status(
    db: Session,
    user_a: int,
    user_b: int,
    status: ContactStatus,
    now: datetime | None = None,
) -> int:
    """Move both rows of a relation to ``status``.

    Rows already in ``status`` are left alone, so repeating the call is a
    no-op that returns 0. Accepting stamps the same ``accepted_at`` on both
    rows.
    """
    status = ContactStatus(status)
    values: dict = {"status": status.value}
    if status == ContactStatus.ACCEPTED:
        values["accepted_at"] = now or utcnow()

    with _atomic(db):
        result = db.execute(
            update(Contact)
            .where(_pair(user_a, user_b), Contact.status != status.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        _check_pair_count(result.rowcount, user_a, user_b)

    if result.rowcount:
        logger.info("Relation {} <-> {} is now {}", user_a, user_b, status.value)
    return result.rowcount


def delete_bidirectional(
    db: Session,
    user_a: int,
    user_b: int,
    status: ContactStatus | None = None,
) -> int:
    """Delete both rows of a relation; ``status`` restricts which rows qualify.

    Returns the number of rows deleted, 0 when there was no such relation.
    """
    stmt = delete(Contact).where(_pair(user_a, user_b))
    if status is not None:
        stmt = stmt.where(Contact.status == ContactStatus(status).value)

    with _atomic(db):
        result = db.execute(stmt.execution_options(synchronize_session=False))
        _check_pair_count(result.rowcount, user_a, user_b)

    if result.rowcount:
        logger.info("Deleted relation {} <-> {}", user_a, user_b)
    return result.rowcount


def set_nickname(db: Session, owner_id: int, peer_id: int, nickname: str | None) -> Contact | None:
    """Set the owner's nickname for an accepted contact. The peer's row is not touched."""
    contact = (
        db.execute(
            select(Contact).where(
                Contact.owner_id == owner_id,
                Contact.peer_id == peer_id,
                Contact.status == ContactStatus.ACCEPTED.value,
            )
        )
        .scalars()
        .one_or_none()
    )
    if not contact:
        return None

    contact.nickname = nickname
    with _atomic(db):
        db.flush()
    db.refresh(contact)
    return contact
