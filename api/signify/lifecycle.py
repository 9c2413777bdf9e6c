"""Document status transitions and the guards every mutation goes through.

    draft --publish--> pending_signatures --all recipients signed--> completed
                               |--owner cancels--> cancelled
                               |--expiry passes / unpublish--> expired

completed, expired and cancelled are terminal.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlmodel import Session, select

from .activity import record_activity
from .config import MAX_UPLOAD_BYTES
from .errors import Forbidden, InvalidState, NotFound, ValidationError
from .models import (
    CANCELLED,
    DRAFT,
    EXPIRED,
    PENDING_SIGNATURES,
    TERMINAL_STATUSES,
    Document,
    DocumentRecipient,
    DocumentTool,
    ToolAssignment,
    User,
)

logger = logging.getLogger(__name__)


def get_document(session: Session, document_id: int) -> Document:
    doc = session.get(Document, document_id)
    if not doc:
        raise NotFound("document not found")
    return doc


def get_owned_document(session: Session, document_id: int, user: User) -> Document:
    doc = get_document(session, document_id)
    if doc.owner_id != user.id:
        raise Forbidden("only the document owner can do this")
    expire_if_elapsed(session, doc)
    return doc


def expire_if_elapsed(session: Session, doc: Document, now: Optional[datetime] = None) -> bool:
    """Move a published document past its link expiry to expired.

    Expiry is evaluated lazily whenever the document is touched; nothing
    sweeps in the background.
    """
    now = now or datetime.utcnow()
    if doc.status != PENDING_SIGNATURES or not doc.publish_link_expiry or now <= doc.publish_link_expiry:
        return False
    result = session.exec(
        update(Document)
        .where(Document.id == doc.id, Document.status == PENDING_SIGNATURES)
        .values(status=EXPIRED, published_status=EXPIRED, updated_at=now)
    )
    session.commit()
    session.refresh(doc)
    if result.rowcount:
        logger.info("document %s expired (link expiry %s)", doc.id, doc.publish_link_expiry)
    return bool(result.rowcount)


def ensure_editable(doc: Document):
    if doc.status in TERMINAL_STATUSES:
        raise InvalidState(f"document is {doc.status}")


def create_document(
    session: Session,
    owner: User,
    name: Optional[str],
    filename: str,
    content: bytes,
    file_type: Optional[str] = None,
) -> Document:
    if not content:
        raise ValidationError("empty file")
    if len(content) > MAX_UPLOAD_BYTES:
        raise ValidationError(f"file too large (max {MAX_UPLOAD_BYTES} bytes)")
    filename = filename or "document.pdf"
    doc = Document(
        owner_id=owner.id,
        name=(name or "").strip() or filename,
        filename=filename,
        file_type=file_type or "application/pdf",
        content=content,
        status=DRAFT,
        published_status=DRAFT,
    )
    session.add(doc)
    session.flush()
    record_activity(
        session, owner.id, "document_uploaded", "Document uploaded",
        f"Uploaded {doc.name}", document_id=doc.id,
    )
    session.commit()
    session.refresh(doc)
    return doc


def update_document(session: Session, user: User, document_id: int, name: Optional[str]) -> Document:
    doc = get_owned_document(session, document_id, user)
    ensure_editable(doc)
    if name is not None:
        doc.name = name.strip()
    doc.updated_at = datetime.utcnow()
    session.add(doc)
    session.commit()
    session.refresh(doc)
    return doc


def delete_document(session: Session, user: User, document_id: int):
    doc = get_owned_document(session, document_id, user)
    for model in (ToolAssignment, DocumentTool, DocumentRecipient):
        rows = session.exec(select(model).where(model.document_id == doc.id)).all()
        for row in rows:
            session.delete(row)
    record_activity(
        session, user.id, "document_deleted", "Document deleted",
        f"Deleted {doc.name}", document_id=doc.id,
    )
    session.delete(doc)
    session.commit()
    logger.info("document %s deleted by user %s", document_id, user.id)


def cancel_document(session: Session, user: User, document_id: int, reason: Optional[str] = None) -> Document:
    doc = get_owned_document(session, document_id, user)
    if doc.status != PENDING_SIGNATURES:
        raise InvalidState(f"only documents pending signatures can be cancelled (document is {doc.status})")
    now = datetime.utcnow()
    result = session.exec(
        update(Document)
        .where(Document.id == doc.id, Document.status == PENDING_SIGNATURES)
        .values(
            status=CANCELLED,
            cancelled_by=user.id,
            cancelled_at=now,
            cancellation_reason=reason,
            updated_at=now,
        )
    )
    if not result.rowcount:
        session.rollback()
        session.refresh(doc)
        raise InvalidState(f"document is {doc.status}")
    record_activity(
        session, user.id, "document_cancelled", "Document cancelled",
        reason or f"Cancelled {doc.name}", document_id=doc.id,
    )
    session.commit()
    session.refresh(doc)
    logger.info("document %s cancelled by user %s", doc.id, user.id)
    return doc
