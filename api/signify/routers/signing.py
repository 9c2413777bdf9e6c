from typing import Optional
from fastapi import APIRouter, Depends, Response
from sqlmodel import Session

from .. import publishing
from ..assignments import submit_signatures
from ..auth import recipient_token
from ..db import get_session
from ..schemas import DeclineRequest, SignSubmit
from ..serializers import serialize_document, serialize_recipient, serialize_tools
from ..tools import fetch_tools_for_recipient

router = APIRouter()


@router.get("/published/{publish_link}")
def open_published(
    publish_link: str,
    token: Optional[str] = Depends(recipient_token),
    session: Session = Depends(get_session),
):
    doc, recipient = publishing.resolve_recipient(session, token, publish_link=publish_link)
    recipient = publishing.record_access(session, recipient)
    tools, grouped = fetch_tools_for_recipient(session, doc, recipient)
    return {
        "document": serialize_document(doc),
        "recipient": serialize_recipient(recipient),
        "tools": serialize_tools(tools, grouped, viewer_email=recipient.email),
    }


@router.get("/published/{publish_link}/file")
def published_file(
    publish_link: str,
    token: Optional[str] = Depends(recipient_token),
    session: Session = Depends(get_session),
):
    doc, _ = publishing.resolve_recipient(session, token, publish_link=publish_link)
    return Response(
        content=doc.content,
        media_type=doc.file_type,
        headers={"Content-Disposition": f'inline; filename="{doc.filename}"'},
    )


@router.post("/published/{publish_link}/sign")
def sign_published(
    publish_link: str,
    data: SignSubmit,
    token: Optional[str] = Depends(recipient_token),
    session: Session = Depends(get_session),
):
    doc, recipient = publishing.resolve_recipient(session, token, publish_link=publish_link)
    return submit_signatures(session, doc, recipient, data.fields)


@router.post("/published/{publish_link}/decline")
def decline(
    publish_link: str,
    data: Optional[DeclineRequest] = None,
    token: Optional[str] = Depends(recipient_token),
    session: Session = Depends(get_session),
):
    doc, recipient = publishing.resolve_recipient(session, token, publish_link=publish_link)
    recipient = publishing.decline(session, doc, recipient, reason=data.reason if data else None)
    return serialize_recipient(recipient)
