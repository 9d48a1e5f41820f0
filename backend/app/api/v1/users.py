from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from pydantic.alias_generators import to_camel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.api.deps import get_current_user, get_current_user_id, get_db
from app.models.user import User

router = APIRouter()


class UserOut(BaseModel):
    id: int
    full_name: str
    email: str
    profile_pic: str | None

    class Config:
        from_attributes = True
        alias_generator = to_camel
        populate_by_name = True


class UserMeIn(BaseModel):
    full_name: str | None = None
    email: str | None = None
    profile_pic: str | None = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True


@router.get("/users/me", response_model=UserOut)
def get_me(me: User = Depends(get_current_user)):
    return me


@router.put("/users/me", response_model=UserOut)
def upsert_me(
    payload: UserMeIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    full_name = (payload.full_name or "").strip()
    email = (payload.email or "").strip().lower()
    if not full_name or not email:
        raise HTTPException(status_code=400, detail="Nombre completo y email son obligatorios")

    user = db.execute(select(User).where(User.external_id == user_id)).scalars().one_or_none()
    if not user:
        user = User(external_id=user_id)
        db.add(user)

    user.full_name = full_name
    user.email = email
    if payload.profile_pic is not None:
        user.profile_pic = payload.profile_pic.strip() or None

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="El email ya está en uso")

    db.refresh(user)
    return user
