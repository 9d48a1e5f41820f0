import threading
from datetime import datetime

import pytest
from sqlalchemy import create_engine, event, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.base import Base
from app.db.session import enable_sqlite_foreign_keys
from app.models.contact import Contact, ContactStatus
from app.models.user import User
from app.services import contact_store
from app.services.errors import RelationExistsError, RelationIntegrityError


@pytest.fixture()
def db():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def users(db):
    alice = User(external_id="alice", full_name="Alice Doe", email="alice@example.com")
    bob = User(external_id="bob", full_name="Bob Roe", email="bob@example.com")
    db.add_all([alice, bob])
    db.commit()
    return alice, bob


def _rows(db, a_id, b_id):
    return db.execute(
        select(Contact).where(
            ((Contact.owner_id == a_id) & (Contact.peer_id == b_id))
            | ((Contact.owner_id == b_id) & (Contact.peer_id == a_id))
        )
    ).scalars().all()


def _count(db):
    return db.execute(select(func.count()).select_from(Contact)).scalar_one()


def test_create_writes_both_directions(db, users):
    alice, bob = users
    contact_store.create_bidirectional(db, alice.id, bob.id)

    from_alice = contact_store.find_relation(db, alice.id, bob.id)
    from_bob = contact_store.find_relation(db, bob.id, alice.id)

    assert from_alice.owner_id == alice.id
    assert from_bob.owner_id == bob.id
    assert from_alice.status == from_bob.status == ContactStatus.PENDING.value
    assert from_alice.requested_by_id == from_bob.requested_by_id == alice.id
    assert from_alice.created_at == from_bob.created_at
    assert from_alice.accepted_at is None


def test_find_relation_returns_none_without_relation(db, users):
    alice, bob = users
    assert contact_store.find_relation(db, alice.id, bob.id) is None


def test_duplicate_create_fails_in_both_directions(db, users):
    alice, bob = users
    contact_store.create_bidirectional(db, alice.id, bob.id)

    with pytest.raises(RelationExistsError):
        contact_store.create_bidirectional(db, alice.id, bob.id)
    with pytest.raises(RelationExistsError):
        contact_store.create_bidirectional(db, bob.id, alice.id)

    rows = _rows(db, alice.id, bob.id)
    assert len(rows) == 2
    assert {r.requested_by_id for r in rows} == {alice.id}


def test_create_rolls_back_first_row_when_mirror_conflicts(db, users):
    alice, bob = users
    db.add(Contact(owner_id=bob.id, peer_id=alice.id, status="pending", requested_by_id=bob.id))
    db.commit()

    with pytest.raises(RelationExistsError):
        contact_store.create_bidirectional(db, alice.id, bob.id)

    rows = _rows(db, alice.id, bob.id)
    assert [(r.owner_id, r.peer_id) for r in rows] == [(bob.id, alice.id)]


def test_create_rejects_self_relation(db, users):
    alice, _ = users
    with pytest.raises(ValueError):
        contact_store.create_bidirectional(db, alice.id, alice.id)
    assert _count(db) == 0


def test_accept_stamps_same_time_on_both_rows_and_is_idempotent(db, users):
    alice, bob = users
    contact_store.create_bidirectional(db, alice.id, bob.id)

    changed = contact_store.update_bidirectional_status(db, bob.id, alice.id, ContactStatus.ACCEPTED)
    assert changed == 2

    rows = _rows(db, alice.id, bob.id)
    assert {r.status for r in rows} == {"accepted"}
    assert rows[0].accepted_at is not None
    assert rows[0].accepted_at == rows[1].accepted_at
    first_accepted_at = rows[0].accepted_at

    again = contact_store.update_bidirectional_status(db, alice.id, bob.id, ContactStatus.ACCEPTED)
    assert again == 0
    rows = _rows(db, alice.id, bob.id)
    assert all(r.accepted_at == first_accepted_at for r in rows)


def test_accept_uses_given_timestamp(db, users):
    alice, bob = users
    contact_store.create_bidirectional(db, alice.id, bob.id)

    stamp = datetime(2024, 5, 1, 12, 30)
    contact_store.update_bidirectional_status(db, alice.id, bob.id, ContactStatus.ACCEPTED, now=stamp)

    rows = _rows(db, alice.id, bob.id)
    assert [r.accepted_at.replace(tzinfo=None) for r in rows] == [stamp, stamp]


def test_update_on_torn_pair_rolls_back(db, users):
    alice, bob = users
    db.add(Contact(owner_id=alice.id, peer_id=bob.id, status="pending", requested_by_id=alice.id))
    db.commit()

    with pytest.raises(RelationIntegrityError):
        contact_store.update_bidirectional_status(db, alice.id, bob.id, ContactStatus.ACCEPTED)

    row = contact_store.find_relation(db, alice.id, bob.id)
    assert row.status == "pending"
    assert row.accepted_at is None


def test_delete_removes_both_rows_then_reports_nothing(db, users):
    alice, bob = users
    contact_store.create_bidirectional(db, alice.id, bob.id)

    assert contact_store.delete_bidirectional(db, bob.id, alice.id) == 2
    assert _count(db) == 0
    assert contact_store.delete_bidirectional(db, bob.id, alice.id) == 0


def test_delete_with_status_filter_leaves_other_statuses(db, users):
    alice, bob = users
    contact_store.create_bidirectional(db, alice.id, bob.id)
    contact_store.update_bidirectional_status(db, alice.id, bob.id, ContactStatus.ACCEPTED)

    assert contact_store.delete_bidirectional(db, alice.id, bob.id, ContactStatus.PENDING) == 0
    assert len(_rows(db, alice.id, bob.id)) == 2


def test_delete_on_torn_pair_rolls_back(db, users):
    alice, bob = users
    db.add(Contact(owner_id=alice.id, peer_id=bob.id, status="accepted", requested_by_id=alice.id))
    db.commit()

    with pytest.raises(RelationIntegrityError):
        contact_store.delete_bidirectional(db, alice.id, bob.id)
    assert _count(db) == 1


def test_nickname_is_not_mirrored(db, users):
    alice, bob = users
    contact_store.create_bidirectional(db, alice.id, bob.id)

    # Not accepted yet.
    assert contact_store.set_nickname(db, alice.id, bob.id, "Bobby") is None

    contact_store.update_bidirectional_status(db, alice.id, bob.id, ContactStatus.ACCEPTED)
    contact_store.set_nickname(db, bob.id, alice.id, "Ali")
    updated = contact_store.set_nickname(db, alice.id, bob.id, "Bobby")
    assert updated.nickname == "Bobby"

    from_bob = contact_store.find_relation(db, bob.id, alice.id)
    assert from_bob.nickname == "Ali"

    cleared = contact_store.set_nickname(db, alice.id, bob.id, None)
    assert cleared.nickname is None
    assert contact_store.find_relation(db, bob.id, alice.id).nickname == "Ali"


def test_rows_are_inserted_lowest_owner_first(db, users):
    alice, bob = users
    carol = User(external_id="carol", full_name="Carol Poe", email="carol@example.com")
    db.add(carol)
    db.commit()

    inserted = []

    def _record(_mapper, _connection, target):
        inserted.append((target.owner_id, target.peer_id))

    event.listen(Contact, "before_insert", _record)
    try:
        contact_store.create_bidirectional(db, alice.id, bob.id)
        contact_store.create_bidirectional(db, carol.id, alice.id)
    finally:
        event.remove(Contact, "before_insert", _record)

    assert inserted == [
        (alice.id, bob.id),
        (bob.id, alice.id),
        (alice.id, carol.id),
        (carol.id, alice.id),
    ]
    # The requester is still recorded regardless of insert order.
    assert contact_store.find_relation(db, alice.id, carol.id).requested_by_id == carol.id


def test_simultaneous_requests_in_both_directions(tmp_path):
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'contacts.db'}",
        connect_args={"check_same_thread": False, "timeout": 10},
    )
    Base.metadata.create_all(bind=engine)
    SessionFactory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    with SessionFactory() as setup:
        alice = User(external_id="alice", full_name="Alice Doe", email="alice@example.com")
        bob = User(external_id="bob", full_name="Bob Roe", email="bob@example.com")
        setup.add_all([alice, bob])
        setup.commit()
        alice_id, bob_id = alice.id, bob.id

    barrier = threading.Barrier(2)
    outcomes = []

    def request(requester_id, target_id):
        with SessionFactory() as session:
            barrier.wait()
            try:
                contact_store.create_bidirectional(session, requester_id, target_id)
                outcomes.append("created")
            except RelationExistsError:
                outcomes.append("exists")

    threads = [
        threading.Thread(target=request, args=(alice_id, bob_id)),
        threading.Thread(target=request, args=(bob_id, alice_id)),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert sorted(outcomes) == ["created", "exists"]

    with SessionFactory() as check:
        rows = _rows(check, alice_id, bob_id)
        assert len(rows) == 2
        assert len({r.requested_by_id for r in rows}) == 1
    engine.dispose()


def test_foreign_key_failure_is_not_reported_as_existing_relation():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        alice = User(external_id="alice", full_name="Alice Doe", email="alice@example.com")
        session.add(alice)
        session.commit()

        with pytest.raises(IntegrityError):
            contact_store.create_bidirectional(session, alice.id, alice.id + 999)
        assert _count(session) == 0
    finally:
        session.close()
