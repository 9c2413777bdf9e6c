from fastapi import APIRouter, Depends, Query
from sqlalchemy import func
from sqlmodel import Session, select

from ..activity import list_activity
from ..auth import get_current_user
from ..db import get_session
from ..models import COMPLETED, DRAFT, SIGNED, Document, DocumentRecipient, User
from ..serializers import serialize_activity

router = APIRouter()


@router.get("/api/overview/stats")
def stats(session: Session = Depends(get_session), user: User = Depends(get_current_user)):
    total = session.exec(select(func.count(Document.id)).where(Document.owner_id == user.id)).one()
    shared = session.exec(
        select(func.count(Document.id)).where(Document.owner_id == user.id, Document.status != DRAFT)
    ).one()
    completed = session.exec(
        select(func.count(Document.id)).where(Document.owner_id == user.id, Document.status == COMPLETED)
    ).one()
    signatures = session.exec(
        select(func.count(DocumentRecipient.id))
        .join(Document, Document.id == DocumentRecipient.document_id)
        .where(Document.owner_id == user.id, DocumentRecipient.status == SIGNED)
    ).one()
    return {
        "totalDocuments": total,
        "totalSignatures": signatures,
        "sharedDocuments": shared,
        # percent of shared documents that reached completed
        "completionRate": round(100 * completed / shared) if shared else 0,
    }


@router.get("/api/activity")
def activity(
    limit: int = Query(default=10, ge=1, le=100),
    session: Session = Depends(get_session),
    user: User = Depends(get_current_user),
):
    return {"activity": [serialize_activity(a) for a in list_activity(session, user.id, limit=limit)]}
