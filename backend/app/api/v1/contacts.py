from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from pydantic.alias_generators import to_camel
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.api.deps import USER_NOT_FOUND, get_current_user, get_db
from app.models.contact import NICKNAME_MAX_LENGTH, Contact, ContactStatus
from app.models.user import User
from app.services import contact_queries, contact_store
from app.services.errors import InvalidSearchError, RelationExistsError

router = APIRouter()

REQUEST_NOT_FOUND = "Solicitud no encontrada"
CONTACT_NOT_FOUND = "Contacto no encontrado"

EXISTING_RELATION_MESSAGES = {
    ContactStatus.PENDING.value: "Ya tienes una solicitud pendiente con este usuario",
    ContactStatus.ACCEPTED.value: "Este usuario ya está en tus contactos",
    ContactStatus.BLOCKED.value: "No puedes agregar a este usuario",
}


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


class ContactRequestIn(CamelModel):
    contact_id: Any = None


class NicknameIn(CamelModel):
    nickname: str | None = None


class PeerOut(CamelModel):
    id: int
    full_name: str
    email: str
    profile_pic: str | None

    class Config:
        from_attributes = True


class ContactOut(CamelModel):
    id: int
    display_name: str
    original_name: str
    email: str
    profile_pic: str | None
    nickname: str | None
    added_at: datetime | None
    is_contact: bool = True


class PendingRequestOut(CamelModel):
    id: int
    user: PeerOut
    created_at: datetime


class PendingRequestsOut(CamelModel):
    received: list[PendingRequestOut]
    sent: list[PendingRequestOut]


class SearchResultOut(CamelModel):
    id: int
    full_name: str
    email: str
    profile_pic: str | None
    relation_status: str
    can_add: bool


class MessageOut(CamelModel):
    message: str


class NicknameOut(MessageOut):
    nickname: str | None


def _parse_contact_id(raw: Any) -> int:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        raise HTTPException(status_code=400, detail="ID de contacto requerido")
    if isinstance(raw, bool):
        raise HTTPException(status_code=400, detail="ID de contacto inválido")
    try:
        value = int(str(raw).strip())
    except ValueError:
        raise HTTPException(status_code=400, detail="ID de contacto inválido")
    if value <= 0:
        raise HTTPException(status_code=400, detail="ID de contacto inválido")
    return value


def _pending_out(req: contact_queries.PendingRequest) -> PendingRequestOut:
    return PendingRequestOut(id=req.id, user=PeerOut.model_validate(req.peer), created_at=req.created_at)


@router.get("/contacts", response_model=list[ContactOut])
def list_contacts(
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    return [
        ContactOut(
            id=c.peer.id,
            display_name=c.display_name,
            original_name=c.peer.full_name,
            email=c.peer.email,
            profile_pic=c.peer.profile_pic,
            nickname=c.nickname,
            added_at=c.added_at,
        )
        for c in contact_queries.list_accepted(db, me.id)
    ]


@router.get("/contacts/pending", response_model=PendingRequestsOut)
def list_pending_requests(
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    pending = contact_queries.list_pending(db, me.id)
    return PendingRequestsOut(
        received=[_pending_out(r) for r in pending.received],
        sent=[_pending_out(r) for r in pending.sent],
    )


@router.get("/contacts/search", response_model=list[SearchResultOut])
def search_users(
    query: str | None = Query(default=None),
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    try:
        candidates = contact_queries.search_candidates(db, me.id, query)
    except InvalidSearchError:
        raise HTTPException(
            status_code=400,
            detail=f"La búsqueda debe tener al menos {contact_queries.SEARCH_MIN_LENGTH} caracteres",
        )

    return [
        SearchResultOut(
            id=c.user.id,
            full_name=c.user.full_name,
            email=c.user.email,
            profile_pic=c.user.profile_pic,
            relation_status=c.relation_status,
            can_add=c.can_add,
        )
        for c in candidates
    ]


@router.post("/contacts/request", response_model=MessageOut, status_code=201)
def send_contact_request(
    payload: ContactRequestIn,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    contact_id = _parse_contact_id(payload.contact_id)
    if contact_id == me.id:
        raise HTTPException(status_code=400, detail="No puedes agregarte a ti mismo")

    target = db.get(User, contact_id)
    if not target:
        raise HTTPException(status_code=404, detail=USER_NOT_FOUND)

    existing = contact_store.find_relation(db, me.id, target.id)
    if existing:
        message = EXISTING_RELATION_MESSAGES.get(existing.status, "Ya tienes una relación con este usuario")
        raise HTTPException(status_code=400, detail=message)

    try:
        contact_store.create_bidirectional(db, me.id, target.id, ContactStatus.PENDING)
    except RelationExistsError:
        # Lost a race with a concurrent request for the same pair.
        raise HTTPException(status_code=400, detail="Ya tienes una relación con este usuario")

    return MessageOut(message="Solicitud de contacto enviada exitosamente")


@router.put("/contacts/accept/{request_id}", response_model=MessageOut)
def accept_contact_request(
    request_id: int,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    # Only the receiving side may accept.
    req = db.execute(
        select(Contact).where(
            Contact.id == request_id,
            Contact.owner_id == me.id,
            Contact.status == ContactStatus.PENDING.value,
            Contact.requested_by_id != me.id,
        )
    ).scalars().one_or_none()
    if not req:
        raise HTTPException(status_code=404, detail=REQUEST_NOT_FOUND)

    contact_store.update_bidirectional_status(db, me.id, req.peer_id, ContactStatus.ACCEPTED)
    return MessageOut(message="Solicitud de contacto aceptada")


@router.delete("/contacts/reject/{request_id}", response_model=MessageOut)
def reject_contact_request(
    request_id: int,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    # Either side may reject (received) or cancel (sent) a pending request.
    req = db.execute(
        select(Contact).where(
            Contact.id == request_id,
            Contact.owner_id == me.id,
            Contact.status == ContactStatus.PENDING.value,
        )
    ).scalars().one_or_none()
    if not req:
        raise HTTPException(status_code=404, detail=REQUEST_NOT_FOUND)

    deleted = contact_store.delete_bidirectional(db, me.id, req.peer_id, ContactStatus.PENDING)
    if not deleted:
        raise HTTPException(status_code=404, detail=REQUEST_NOT_FOUND)
    return MessageOut(message="Solicitud rechazada")


@router.delete("/contacts/{contact_id}", response_model=MessageOut)
def remove_contact(
    contact_id: int,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    if not contact_store.delete_bidirectional(db, me.id, contact_id):
        raise HTTPException(status_code=404, detail=CONTACT_NOT_FOUND)
    return MessageOut(message="Contacto eliminado exitosamente")


@router.put("/contacts/{contact_id}/nickname", response_model=NicknameOut)
def update_contact_nickname(
    contact_id: int,
    payload: NicknameIn,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    nickname = (payload.nickname or "").strip() or None
    if nickname and len(nickname) > NICKNAME_MAX_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"El nickname no puede superar los {NICKNAME_MAX_LENGTH} caracteres",
        )

    contact = contact_store.set_nickname(db, me.id, contact_id, nickname)
    if not contact:
        raise HTTPException(status_code=404, detail=CONTACT_NOT_FOUND)
    return NicknameOut(message="Nickname actualizado exitosamente", nickname=contact.nickname)
