import logging
import secrets
import smtplib
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from . import email as mailer
from .activity import record_activity
from .config import MAX_EXPIRES_IN_DAYS, TOKEN_ISSUE_ATTEMPTS, WEB_BASE_URL
from .errors import Conflict, Expired, Forbidden, InvalidState, NoRecipients, NotFound, UpstreamFailure, ValidationError
from .lifecycle import expire_if_elapsed, get_document, get_owned_document
from .models import (
    CANCELLED,
    DECLINED,
    DRAFT,
    EXPIRED,
    PENDING,
    PENDING_SIGNATURES,
    PUBLISHED,
    SIGNED,
    VIEWED,
    Document,
    DocumentRecipient,
    DocumentTool,
    ToolAssignment,
    User,
    is_recipient_tool,
)
from .schemas import RecipientRef

logger = logging.getLogger(__name__)


def signing_link(doc: Document, recipient: DocumentRecipient) -> str:
    return f"{WEB_BASE_URL}/sign/{doc.publish_link}?token={recipient.token}"


def _token_taken(session: Session, token: str) -> bool:
    return session.exec(select(DocumentRecipient.id).where(DocumentRecipient.token == token)).first() is not None


def new_recipient_token(session: Session) -> str:
    for _ in range(TOKEN_ISSUE_ATTEMPTS):
        token = secrets.token_urlsafe(32)
        if not _token_taken(session, token):
            return token
    raise Conflict("could not issue a unique recipient token")


def _new_publish_link(session: Session) -> str:
    for _ in range(TOKEN_ISSUE_ATTEMPTS):
        link = secrets.token_urlsafe(16)
        if not session.exec(select(Document.id).where(Document.publish_link == link)).first():
            return link
    raise Conflict("could not issue a unique publish link")


def active_recipients(session: Session, document_id: int) -> List[DocumentRecipient]:
    return session.exec(
        select(DocumentRecipient)
        .where(DocumentRecipient.document_id == document_id, DocumentRecipient.retired_at.is_(None))
        .order_by(DocumentRecipient.order, DocumentRecipient.id)
    ).all()


def find_active_recipient(session: Session, document_id: int, email: str) -> Optional[DocumentRecipient]:
    return session.exec(
        select(DocumentRecipient).where(
            DocumentRecipient.document_id == document_id,
            DocumentRecipient.email == email,
            DocumentRecipient.retired_at.is_(None),
        )
    ).first()


def issue_recipient(
    session: Session,
    doc: Document,
    email: str,
    name: Optional[str] = None,
    order: Optional[int] = None,
) -> Tuple[DocumentRecipient, bool]:
    """Reuse the active recipient row for this email or create one with a fresh token.

    The returned flag tells whether a row was created. The token is checked
    against existing rows here and re-checked by the unique constraint at
    commit time.
    """
    existing = find_active_recipient(session, doc.id, email)
    if existing:
        changed = False
        if name and existing.name != name:
            existing.name = name
            changed = True
        if order is not None and existing.order != order:
            existing.order = order
            changed = True
        if changed:
            session.add(existing)
        return existing, False
    if order is None:
        order = len(active_recipients(session, doc.id)) + 1
    recipient = DocumentRecipient(
        document_id=doc.id,
        email=email,
        name=name,
        token=new_recipient_token(session),
        status=PENDING,
        order=order,
    )
    session.add(recipient)
    session.flush()
    return recipient, True


def retire_orphaned_recipients(session: Session, doc: Document) -> List[DocumentRecipient]:
    """Retire recipients that no longer have any field assigned to them.

    Signed recipients are kept as they are: their signatures stay on record.
    A declined recipient keeps its declined status; everyone else is expired.
    """
    assigned = set(
        session.exec(select(ToolAssignment.email).where(ToolAssignment.document_id == doc.id)).all()
    )
    now = datetime.utcnow()
    retired = []
    for recipient in active_recipients(session, doc.id):
        if recipient.email in assigned or recipient.status == SIGNED:
            continue
        recipient.retired_at = now
        if recipient.status != DECLINED:
            recipient.status = EXPIRED
        session.add(recipient)
        retired.append(recipient)
    if retired:
        session.flush()
        logger.info("document %s: retired recipients %s", doc.id, [r.email for r in retired])
    return retired


def _assigned_emails(session: Session, doc: Document) -> List[Tuple[str, Optional[str]]]:
    """Distinct (email, name) pairs assigned to recipient fields, in placement order."""
    tools = session.exec(
        select(DocumentTool).where(DocumentTool.document_id == doc.id).order_by(DocumentTool.id)
    ).all()
    recipient_tools = [t for t in tools if is_recipient_tool(t.type)]
    if not recipient_tools:
        raise NoRecipients("document has no recipient fields")
    rows = session.exec(
        select(ToolAssignment).where(ToolAssignment.document_id == doc.id).order_by(ToolAssignment.id)
    ).all()
    by_tool: Dict[int, List[ToolAssignment]] = {}
    for row in rows:
        by_tool.setdefault(row.tool_pk, []).append(row)
    if not rows:
        raise NoRecipients("no recipient is assigned to any field")
    unassigned = [t.tool_id for t in recipient_tools if t.id not in by_tool]
    if unassigned:
        raise ValidationError(f"recipient fields without an assigned recipient: {', '.join(unassigned)}")
    seen: Dict[str, Optional[str]] = {}
    for tool in recipient_tools:
        for row in by_tool[tool.id]:
            if row.email not in seen:
                seen[row.email] = row.name
            elif not seen[row.email] and row.name:
                seen[row.email] = row.name
    return list(seen.items())


def _issue_all(
    session: Session,
    doc: Document,
    assigned: Sequence[Tuple[str, Optional[str]]],
    hints: Dict[str, RecipientRef],
) -> List[DocumentRecipient]:
    issued = []
    for idx, (email, name) in enumerate(assigned):
        hint = hints.get(email)
        recipient, created = issue_recipient(
            session,
            doc,
            email,
            name=(hint.name if hint and hint.name else name),
            order=(hint.order if hint and hint.order is not None else idx + 1),
        )
        if created:
            issued.append(recipient)
    retire_orphaned_recipients(session, doc)
    return issued


def publish(
    session: Session,
    user: User,
    document_id: int,
    recipients: Sequence[RecipientRef] = (),
    expires_in_days: int = 30,
) -> Tuple[Document, List[DocumentRecipient]]:
    """Make the document signable and hand every assigned recipient a token.

    Recipient rows are committed before the document is flipped to
    pending_signatures, so a failure in between leaves a draft that can be
    published again. Re-running on a published document reuses tokens and
    only issues new ones for newly assigned recipients.
    """
    if not 1 <= expires_in_days <= MAX_EXPIRES_IN_DAYS:
        raise ValidationError(f"expires_in_days must be between 1 and {MAX_EXPIRES_IN_DAYS}")
    doc = get_owned_document(session, document_id, user)
    if doc.status not in (DRAFT, PENDING_SIGNATURES):
        raise InvalidState(f"cannot publish a {doc.status} document")

    assigned = _assigned_emails(session, doc)
    hints = {r.email: r for r in recipients}

    issued: List[DocumentRecipient] = []
    for attempt in range(TOKEN_ISSUE_ATTEMPTS):
        try:
            issued = _issue_all(session, doc, assigned, hints)
            session.commit()
            break
        except IntegrityError:
            session.rollback()
            logger.warning("document %s: recipient token collision on attempt %s", doc.id, attempt + 1)
    else:
        raise Conflict("could not issue unique recipient tokens")

    now = datetime.utcnow()
    for attempt in range(TOKEN_ISSUE_ATTEMPTS):
        try:
            doc = session.get(Document, document_id)
            if not doc.publish_link:
                doc.publish_link = _new_publish_link(session)
            doc.publish_link_expiry = now + timedelta(days=expires_in_days)
            doc.published_status = PUBLISHED
            doc.status = PENDING_SIGNATURES
            doc.published_at = now
            doc.updated_at = now
            session.add(doc)
            for recipient in issued:
                record_activity(
                    session, user.id, "document_shared", "Document shared",
                    f"Shared {doc.name} with {recipient.email}", document_id=doc.id,
                )
            session.commit()
            break
        except IntegrityError:
            session.rollback()
            logger.warning("document %s: publish link collision on attempt %s", doc.id, attempt + 1)
    else:
        raise Conflict("could not issue a unique publish link")
    session.refresh(doc)
    logger.info("document %s published to %s recipient(s), expires %s", doc.id, len(assigned), doc.publish_link_expiry)

    notified = notify_recipients(doc, user, issued)
    if notified:
        doc.recipients_notified = sorted(set(doc.recipients_notified or []) | set(notified))
        session.add(doc)
        session.commit()
        session.refresh(doc)
    return doc, active_recipients(session, doc.id)


def _send_request(doc: Document, owner: User, recipient: DocumentRecipient, reminder: bool = False) -> bool:
    request = mailer.SignatureRequest(
        recipient_email=recipient.email,
        recipient_name=recipient.name,
        requester_name=owner.full_name or owner.email,
        requester_email=owner.email,
        document_name=doc.name,
        link=signing_link(doc, recipient),
        expires_at=doc.publish_link_expiry,
        reminder=reminder,
    )
    try:
        mailer.send_signature_request(request)
    except (smtplib.SMTPException, OSError):
        logger.exception("document %s: could not email %s", doc.id, recipient.email)
        return False
    return True


def notify_recipients(doc: Document, owner: User, recipients: Sequence[DocumentRecipient]) -> List[str]:
    return [r.email for r in recipients if _send_request(doc, owner, r)]


def unpublish(session: Session, user: User, document_id: int) -> Document:
    """Withdraw the link. Captured signatures are kept; calling twice is a no-op."""
    doc = get_owned_document(session, document_id, user)
    if doc.status == EXPIRED:
        return doc
    if doc.status != PENDING_SIGNATURES:
        raise InvalidState(f"cannot unpublish a {doc.status} document")
    now = datetime.utcnow()
    result = session.exec(
        update(Document)
        .where(Document.id == doc.id, Document.status == PENDING_SIGNATURES)
        .values(status=EXPIRED, published_status=EXPIRED, updated_at=now)
    )
    if result.rowcount:
        record_activity(
            session, user.id, "document_unpublished", "Document unpublished",
            f"Withdrew the signing link for {doc.name}", document_id=doc.id,
        )
    session.commit()
    session.refresh(doc)
    logger.info("document %s unpublished by user %s", doc.id, user.id)
    return doc


def _check_access(session: Session, doc: Document, recipient: DocumentRecipient):
    expire_if_elapsed(session, doc)
    if doc.status == CANCELLED:
        raise InvalidState("document was cancelled by its owner")
    if doc.status == EXPIRED or recipient.retired_at is not None:
        raise Expired("signing link has expired")
    if doc.publish_link_expiry and datetime.utcnow() > doc.publish_link_expiry:
        raise Expired("signing link has expired")
    if doc.status == DRAFT:
        raise Forbidden("document is not published")


def resolve_recipient(
    session: Session,
    token: Optional[str],
    publish_link: Optional[str] = None,
    document_id: Optional[int] = None,
) -> Tuple[Document, DocumentRecipient]:
    if not token:
        raise Forbidden("recipient token required")
    recipient = session.exec(select(DocumentRecipient).where(DocumentRecipient.token == token)).first()
    if not recipient:
        raise Forbidden("invalid recipient token")
    doc = get_document(session, recipient.document_id)
    if publish_link is not None and doc.publish_link != publish_link:
        raise Forbidden("token does not belong to this document")
    if document_id is not None and doc.id != document_id:
        raise Forbidden("token does not belong to this document")
    _check_access(session, doc, recipient)
    return doc, recipient


def resolve_recipient_for_user(session: Session, user: User, document_id: int) -> Tuple[Document, DocumentRecipient]:
    doc = get_document(session, document_id)
    recipient = find_active_recipient(session, doc.id, user.email.lower())
    if not recipient:
        raise Forbidden("you are not a recipient of this document")
    _check_access(session, doc, recipient)
    return doc, recipient


def record_access(session: Session, recipient: DocumentRecipient) -> DocumentRecipient:
    now = datetime.utcnow()
    session.exec(
        update(DocumentRecipient)
        .where(DocumentRecipient.id == recipient.id)
        .values(last_accessed_at=now, access_count=DocumentRecipient.access_count + 1)
    )
    session.exec(
        update(DocumentRecipient)
        .where(DocumentRecipient.id == recipient.id, DocumentRecipient.viewed_at.is_(None))
        .values(viewed_at=now)
    )
    session.exec(
        update(DocumentRecipient)
        .where(DocumentRecipient.id == recipient.id, DocumentRecipient.status == PENDING)
        .values(status=VIEWED)
    )
    session.commit()
    session.refresh(recipient)
    return recipient


def remind(session: Session, user: User, document_id: int, recipient_id: int) -> DocumentRecipient:
    doc = get_owned_document(session, document_id, user)
    if doc.status != PENDING_SIGNATURES:
        raise InvalidState(f"cannot send reminders for a {doc.status} document")
    recipient = session.get(DocumentRecipient, recipient_id)
    if not recipient or recipient.document_id != doc.id:
        raise NotFound("recipient not found")
    if recipient.status not in (PENDING, VIEWED):
        raise InvalidState(f"recipient is {recipient.status}")
    if not _send_request(doc, user, recipient, reminder=True):
        raise UpstreamFailure("reminder could not be delivered")
    recipient.reminders = list(recipient.reminders or []) + [datetime.utcnow().isoformat()]
    session.add(recipient)
    record_activity(
        session, user.id, "reminder_sent", "Reminder sent",
        f"Reminded {recipient.email} to sign {doc.name}", document_id=doc.id,
    )
    session.commit()
    session.refresh(recipient)
    return recipient


def decline(session: Session, doc: Document, recipient: DocumentRecipient, reason: Optional[str] = None) -> DocumentRecipient:
    """Record a recipient's refusal. The document stays pending until the owner acts."""
    if doc.status != PENDING_SIGNATURES:
        raise InvalidState(f"document is {doc.status}")
    now = datetime.utcnow()
    result = session.exec(
        update(DocumentRecipient)
        .where(DocumentRecipient.id == recipient.id, DocumentRecipient.status.in_([PENDING, VIEWED]))
        .values(status=DECLINED, decline_reason=reason, declined_at=now)
    )
    if not result.rowcount:
        session.rollback()
        session.refresh(recipient)
        raise InvalidState(f"recipient is {recipient.status}")
    record_activity(
        session, doc.owner_id, "document_declined", "Signature declined",
        f"{recipient.email} declined to sign {doc.name}" + (f": {reason}" if reason else ""),
        document_id=doc.id,
    )
    session.commit()
    session.refresh(recipient)
    logger.info("document %s: recipient %s declined", doc.id, recipient.email)
    return recipient
