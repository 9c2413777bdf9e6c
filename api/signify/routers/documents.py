from typing import Optional
from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile, status
from sqlmodel import Session, select

from .. import lifecycle, publishing
from ..auth import get_current_user, get_optional_user, recipient_token
from ..db import get_session
from ..errors import Forbidden
from ..export import export_document
from ..models import DRAFT, Document, DocumentRecipient, User
from ..schemas import CancelRequest, DocumentUpdate, PublishRequest, SignSubmit
from ..assignments import submit_signatures
from ..serializers import serialize_document, serialize_recipient

router = APIRouter()


def _owner_view(session: Session, doc: Document) -> dict:
    recipients = publishing.active_recipients(session, doc.id)
    out = serialize_document(doc, recipients, include_tokens=True)
    if doc.publish_link:
        for entry, r in zip(out["recipients"], recipients):
            entry["signing_link"] = publishing.signing_link(doc, r)
    return out


@router.get("/all")
def list_documents(session: Session = Depends(get_session), user: User = Depends(get_current_user)):
    docs = session.exec(
        select(Document).where(Document.owner_id == user.id).order_by(Document.created_at.desc())
    ).all()
    for doc in docs:
        lifecycle.expire_if_elapsed(session, doc)
    return {"documents": [serialize_document(d) for d in docs]}


@router.get("/recent")
def recent_documents(
    limit: int = Query(default=5, ge=1, le=100),
    session: Session = Depends(get_session),
    user: User = Depends(get_current_user),
):
    docs = session.exec(
        select(Document)
        .where(Document.owner_id == user.id)
        .order_by(Document.updated_at.desc(), Document.id.desc())
        .limit(limit)
    ).all()
    for doc in docs:
        lifecycle.expire_if_elapsed(session, doc)
    return {"documents": [serialize_document(d) for d in docs]}


@router.get("/shared-with-me")
def shared_with_me(session: Session = Depends(get_session), user: User = Depends(get_current_user)):
    rows = session.exec(
        select(Document, DocumentRecipient)
        .join(DocumentRecipient, DocumentRecipient.document_id == Document.id)
        .where(
            DocumentRecipient.email == user.email.lower(),
            DocumentRecipient.retired_at.is_(None),
            Document.status != DRAFT,
        )
        .order_by(Document.published_at.desc())
    ).all()
    out = []
    for doc, recipient in rows:
        lifecycle.expire_if_elapsed(session, doc)
        entry = serialize_document(doc)
        entry["my_status"] = recipient.status
        out.append(entry)
    return {"documents": out}


@router.post("/upload", status_code=status.HTTP_201_CREATED)
async def upload_document(
    file: UploadFile = File(...),
    name: Optional[str] = Form(default=None),
    session: Session = Depends(get_session),
    user: User = Depends(get_current_user),
):
    data = await file.read()
    doc = lifecycle.create_document(
        session, user, name, file.filename, data, file_type=file.content_type,
    )
    return serialize_document(doc)


@router.get("/{document_id}")
def get_document(document_id: int, session: Session = Depends(get_session), user: User = Depends(get_current_user)):
    doc = lifecycle.get_owned_document(session, document_id, user)
    return _owner_view(session, doc)


@router.patch("/{document_id}")
def update_document(
    document_id: int,
    data: DocumentUpdate,
    session: Session = Depends(get_session),
    user: User = Depends(get_current_user),
):
    doc = lifecycle.update_document(session, user, document_id, data.name)
    return serialize_document(doc)


@router.delete("/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_document(document_id: int, session: Session = Depends(get_session), user: User = Depends(get_current_user)):
    lifecycle.delete_document(session, user, document_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{document_id}/file")
def document_file(document_id: int, session: Session = Depends(get_session), user: User = Depends(get_current_user)):
    doc = lifecycle.get_owned_document(session, document_id, user)
    return Response(
        content=doc.content,
        media_type=doc.file_type,
        headers={"Content-Disposition": f'inline; filename="{doc.filename}"'},
    )


@router.get("/{document_id}/export")
def export(document_id: int, session: Session = Depends(get_session), user: User = Depends(get_current_user)):
    data, sha = export_document(session, user, document_id)
    doc = session.get(Document, document_id)
    stem = doc.filename.rsplit(".", 1)[0]
    return Response(
        content=data,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{stem}-signed.pdf"',
            "X-Content-SHA256": sha,
        },
    )


@router.post("/{document_id}/publish")
def publish(
    document_id: int,
    data: Optional[PublishRequest] = None,
    session: Session = Depends(get_session),
    user: User = Depends(get_current_user),
):
    data = data or PublishRequest()
    doc, _ = publishing.publish(
        session, user, document_id, recipients=data.recipients, expires_in_days=data.expires_in_days,
    )
    return _owner_view(session, doc)


@router.post("/{document_id}/unpublish")
def unpublish(document_id: int, session: Session = Depends(get_session), user: User = Depends(get_current_user)):
    doc = publishing.unpublish(session, user, document_id)
    return serialize_document(doc)


@router.post("/{document_id}/cancel")
def cancel(
    document_id: int,
    data: Optional[CancelRequest] = None,
    session: Session = Depends(get_session),
    user: User = Depends(get_current_user),
):
    doc = lifecycle.cancel_document(session, user, document_id, reason=data.reason if data else None)
    return serialize_document(doc)


@router.post("/{document_id}/recipients/{recipient_id}/remind")
def remind(
    document_id: int,
    recipient_id: int,
    session: Session = Depends(get_session),
    user: User = Depends(get_current_user),
):
    recipient = publishing.remind(session, user, document_id, recipient_id)
    return serialize_recipient(recipient)


@router.post("/{document_id}/sign")
def sign(
    document_id: int,
    data: SignSubmit,
    token: Optional[str] = Depends(recipient_token),
    session: Session = Depends(get_session),
    user: Optional[User] = Depends(get_optional_user),
):
    """Submit captured fields as a token holder or as a logged-in recipient."""
    if token:
        doc, recipient = publishing.resolve_recipient(session, token, document_id=document_id)
    elif user:
        doc, recipient = publishing.resolve_recipient_for_user(session, user, document_id)
    else:
        raise Forbidden("recipient token or login required")
    return submit_signatures(session, doc, recipient, data.fields)
