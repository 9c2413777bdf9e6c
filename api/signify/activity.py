from typing import List, Optional
from sqlmodel import Session, select

from .models import Activity
from .utils import canonical_json, sha256_bytes

GENESIS_HASH = "0" * 64


def record_activity(
    session: Session,
    user_id: int,
    type_: str,
    title: str,
    description: str = "",
    document_id: Optional[int] = None,
) -> Activity:
    """Append an entry to the user's activity log.

    Entries form a hash chain per user: each one stores the hash of its
    predecessor, so a rewritten or removed entry breaks every later link.
    The caller owns the commit.
    """
    last = session.exec(
        select(Activity).where(Activity.user_id == user_id).order_by(Activity.id.desc())
    ).first()
    prev_hash = last.hash if last else GENESIS_HASH
    entry = Activity(
        user_id=user_id,
        document_id=document_id,
        type=type_,
        title=title,
        description=description,
        prev_hash=prev_hash,
    )
    payload = {"user_id": user_id, "document_id": document_id, "type": type_, "title": title, "description": description}
    entry.hash = sha256_bytes((prev_hash + canonical_json(payload)).encode())
    session.add(entry)
    session.flush()
    return entry


def list_activity(session: Session, user_id: int, limit: int = 10) -> List[Activity]:
    return session.exec(
        select(Activity).where(Activity.user_id == user_id).order_by(Activity.id.desc()).limit(limit)
    ).all()


def verify_chain(session: Session, user_id: int) -> bool:
    entries = session.exec(
        select(Activity).where(Activity.user_id == user_id).order_by(Activity.id)
    ).all()
    prev_hash = GENESIS_HASH
    for entry in entries:
        payload = {
            "user_id": entry.user_id,
            "document_id": entry.document_id,
            "type": entry.type,
            "title": entry.title,
            "description": entry.description,
        }
        if entry.prev_hash != prev_hash:
            return False
        if entry.hash != sha256_bytes((prev_hash + canonical_json(payload)).encode()):
            return False
        prev_hash = entry.hash
    return True
