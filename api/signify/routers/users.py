from datetime import datetime
from fastapi import APIRouter, Depends
from sqlmodel import Session, select

from ..auth import get_current_user
from ..capture import normalize_data_url
from ..db import get_session
from ..models import Signature, User
from ..schemas import SignatureUpsert
from ..serializers import serialize_signature, serialize_user

router = APIRouter()


@router.get("/me")
def me(user: User = Depends(get_current_user)):
    return serialize_user(user)


@router.get("/signature")
def get_signature(session: Session = Depends(get_session), user: User = Depends(get_current_user)):
    sig = session.exec(select(Signature).where(Signature.user_id == user.id)).first()
    return {"signature": serialize_signature(sig)}


@router.post("/signature")
def save_signature(
    data: SignatureUpsert,
    session: Session = Depends(get_session),
    user: User = Depends(get_current_user),
):
    """Create or replace the caller's saved signature."""
    signature, initials = data.signature, data.initials
    if data.type == "drawn":
        signature = normalize_data_url(signature)
        initials = normalize_data_url(initials) if initials else ""
    sig = session.exec(select(Signature).where(Signature.user_id == user.id)).first()
    if sig is None:
        sig = Signature(user_id=user.id, type=data.type, signature=signature, initials=initials)
    else:
        sig.type = data.type
        sig.signature = signature
        sig.initials = initials
        sig.updated_at = datetime.utcnow()
    session.add(sig)
    session.commit()
    session.refresh(sig)
    return {"signature": serialize_signature(sig)}
