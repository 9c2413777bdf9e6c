import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, update
from sqlmodel import Session, select

from .activity import record_activity
from .capture import normalize_value
from .errors import Conflict, Forbidden, InvalidState, NotFound, ValidationError
from .lifecycle import ensure_editable, get_owned_document
from .models import (
    COMPLETED,
    DECLINED,
    PENDING,
    PENDING_SIGNATURES,
    SIGNATURE_IMAGE,
    SIGNED,
    TEXT,
    VIEWED,
    Document,
    DocumentRecipient,
    DocumentTool,
    ToolAssignment,
    User,
    is_recipient_tool,
)
from .publishing import active_recipients, issue_recipient, notify_recipients, retire_orphaned_recipients
from .schemas import RecipientRef, ToolValue

logger = logging.getLogger(__name__)

# value kinds a recipient may submit per field type
ACCEPTED_KINDS = {
    "recipient_signature": (SIGNATURE_IMAGE, TEXT),
    "recipient_initial": (SIGNATURE_IMAGE, TEXT),
    "recipient_email": (TEXT,),
    "recipient_fullname": (TEXT,),
}


def get_tool(session: Session, document_id: int, tool_id: str) -> DocumentTool:
    tool = session.exec(
        select(DocumentTool).where(DocumentTool.document_id == document_id, DocumentTool.tool_id == tool_id)
    ).first()
    if not tool:
        raise NotFound(f"tool {tool_id} not found")
    return tool


def assignments_for(session: Session, tool: DocumentTool) -> List[ToolAssignment]:
    return session.exec(
        select(ToolAssignment).where(ToolAssignment.tool_pk == tool.id).order_by(ToolAssignment.id)
    ).all()


def assignments_by_tool(session: Session, document_id: int) -> Dict[int, List[ToolAssignment]]:
    rows = session.exec(
        select(ToolAssignment).where(ToolAssignment.document_id == document_id).order_by(ToolAssignment.id)
    ).all()
    grouped: Dict[int, List[ToolAssignment]] = {}
    for row in rows:
        grouped.setdefault(row.tool_pk, []).append(row)
    return grouped


def has_signed(session: Session, tool: DocumentTool) -> bool:
    return session.exec(
        select(ToolAssignment.id).where(ToolAssignment.tool_pk == tool.id, ToolAssignment.status == SIGNED)
    ).first() is not None


def add_assignment(
    session: Session, doc: Document, tool: DocumentTool, ref: RecipientRef
) -> Tuple[ToolAssignment, Optional[DocumentRecipient]]:
    """Assign ref to tool. The second item is the recipient newly issued for a published document."""
    if not is_recipient_tool(tool.type):
        raise ValidationError(f"{tool.type} fields are filled by the owner and take no recipients")
    existing = session.exec(
        select(ToolAssignment).where(ToolAssignment.tool_pk == tool.id, ToolAssignment.email == ref.email)
    ).first()
    if existing:
        return existing, None
    assignment = ToolAssignment(
        tool_pk=tool.id,
        document_id=doc.id,
        email=ref.email,
        name=ref.name,
        status=PENDING,
    )
    session.add(assignment)
    session.flush()
    issued = None
    if doc.status == PENDING_SIGNATURES:
        # published documents hand out a token right away
        recipient, created = issue_recipient(session, doc, ref.email, name=ref.name, order=ref.order)
        if created:
            issued = recipient
        elif recipient.status == SIGNED:
            # a new field for someone who already finished reopens their signing
            recipient.status = VIEWED if recipient.viewed_at else PENDING
            recipient.signed_at = None
            session.add(recipient)
    return assignment, issued


def settle(session: Session, doc: Document):
    """Re-derive recipient and document state after assignments changed on a published document."""
    if doc.status != PENDING_SIGNATURES:
        return
    retire_orphaned_recipients(session, doc)
    for recipient in active_recipients(session, doc.id):
        if recipient.status in (PENDING, VIEWED):
            refresh_recipient_status(session, doc, recipient)
    complete_if_done(session, doc)


def assign_recipient(session: Session, user: User, document_id: int, tool_id: str, ref: RecipientRef) -> ToolAssignment:
    doc = get_owned_document(session, document_id, user)
    ensure_editable(doc)
    tool = get_tool(session, doc.id, tool_id)
    assignment, issued = add_assignment(session, doc, tool, ref)
    session.commit()
    session.refresh(assignment)
    if issued:
        owner = session.get(User, doc.owner_id)
        if notify_recipients(doc, owner, [issued]):
            doc.recipients_notified = sorted(set(doc.recipients_notified or []) | {issued.email})
            session.add(doc)
            session.commit()
    return assignment


def unassign_recipient(session: Session, user: User, document_id: int, tool_id: str, email: str):
    doc = get_owned_document(session, document_id, user)
    ensure_editable(doc)
    tool = get_tool(session, doc.id, tool_id)
    email = email.strip().lower()
    assignment = session.exec(
        select(ToolAssignment).where(ToolAssignment.tool_pk == tool.id, ToolAssignment.email == email)
    ).first()
    if not assignment:
        raise NotFound(f"{email} is not assigned to tool {tool_id}")
    if assignment.status == SIGNED:
        raise InvalidState("signed assignments cannot be removed")
    session.delete(assignment)
    session.flush()
    settle(session, doc)
    session.commit()


def record_signature(
    session: Session,
    doc: Document,
    recipient: DocumentRecipient,
    tool: DocumentTool,
    value: ToolValue,
    now: Optional[datetime] = None,
) -> bool:
    """Fill one assignment. Returns False when the identical value was already recorded.

    The write only lands while the assignment is unsigned, so of two racing
    submissions with different payloads the second gets Conflict.
    """
    assignment = session.exec(
        select(ToolAssignment).where(ToolAssignment.tool_pk == tool.id, ToolAssignment.email == recipient.email)
    ).first()
    if not assignment:
        raise Forbidden(f"tool {tool.tool_id} is not assigned to you")
    if value.kind not in ACCEPTED_KINDS.get(tool.type, ()):
        raise ValidationError(f"{tool.type} does not accept {value.kind} values")
    data = normalize_value(value.kind, value.value)
    now = now or datetime.utcnow()
    result = session.exec(
        update(ToolAssignment)
        .where(ToolAssignment.id == assignment.id, ToolAssignment.status != SIGNED)
        .values(status=SIGNED, signature_kind=value.kind, signature_data=data, signed_at=now)
    )
    if result.rowcount:
        return True
    session.refresh(assignment)
    if assignment.signature_kind == value.kind and assignment.signature_data == data:
        return False
    raise Conflict(f"tool {tool.tool_id} was already signed with a different value")


def refresh_recipient_status(session: Session, doc: Document, recipient: DocumentRecipient) -> bool:
    """Mark the recipient signed once every field assigned to them is signed."""
    outstanding = session.exec(
        select(func.count(ToolAssignment.id)).where(
            ToolAssignment.document_id == doc.id,
            ToolAssignment.email == recipient.email,
            ToolAssignment.status != SIGNED,
        )
    ).one()
    total = session.exec(
        select(func.count(ToolAssignment.id)).where(
            ToolAssignment.document_id == doc.id,
            ToolAssignment.email == recipient.email,
        )
    ).one()
    if outstanding or not total:
        return False
    result = session.exec(
        update(DocumentRecipient)
        .where(DocumentRecipient.id == recipient.id, DocumentRecipient.status.in_([PENDING, VIEWED]))
        .values(status=SIGNED, signed_at=datetime.utcnow())
    )
    session.refresh(recipient)
    if result.rowcount:
        return True
    if recipient.status == SIGNED:
        return False
    raise Conflict(f"recipient is {recipient.status}")


def is_document_complete(session: Session, document_id: int) -> bool:
    """True when every active recipient has signed.

    Declined recipients count as not signed, so they hold the document open
    until the owner reassigns their fields or cancels.
    """
    recipients = active_recipients(session, document_id)
    return bool(recipients) and all(r.status == SIGNED for r in recipients)


def complete_if_done(session: Session, doc: Document) -> bool:
    if doc.status != PENDING_SIGNATURES or not is_document_complete(session, doc.id):
        return False
    now = datetime.utcnow()
    result = session.exec(
        update(Document)
        .where(Document.id == doc.id, Document.status == PENDING_SIGNATURES)
        .values(status=COMPLETED, completed_at=now, updated_at=now)
    )
    session.refresh(doc)
    if not result.rowcount:
        return False
    record_activity(
        session, doc.owner_id, "document_completed", "Document completed",
        f"All recipients signed {doc.name}", document_id=doc.id,
    )
    logger.info("document %s completed", doc.id)
    return True


def submit_signatures(
    session: Session,
    doc: Document,
    recipient: DocumentRecipient,
    fields: Dict[str, ToolValue],
) -> dict:
    """Record a batch of captured fields in one transaction.

    Any rejected field rolls the whole batch back; nothing is half-written.
    """
    if doc.status == COMPLETED:
        if recipient.status != SIGNED:
            raise InvalidState("document is already completed")
    elif doc.status != PENDING_SIGNATURES:
        raise InvalidState(f"document is {doc.status}")
    if recipient.status == DECLINED:
        raise InvalidState("you declined this document")

    now = datetime.utcnow()
    newly_signed = []
    try:
        for tool_id, value in fields.items():
            tool = get_tool(session, doc.id, tool_id)
            if record_signature(session, doc, recipient, tool, value, now=now):
                newly_signed.append(tool_id)
        if doc.status == PENDING_SIGNATURES:
            refresh_recipient_status(session, doc, recipient)
        if newly_signed:
            record_activity(
                session, doc.owner_id, "document_signed", "Fields signed",
                f"{recipient.email} signed {len(newly_signed)} field(s) on {doc.name}",
                document_id=doc.id,
            )
        complete_if_done(session, doc)
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(doc)
    session.refresh(recipient)
    if newly_signed:
        logger.info("document %s: %s signed %s", doc.id, recipient.email, newly_signed)
    return {
        "signed_fields": newly_signed,
        "recipient_status": recipient.status,
        "document_status": doc.status,
        "completed": doc.status == COMPLETED,
    }
