from typing import List, Optional, Sequence

from .models import Activity, Document, DocumentRecipient, DocumentTool, Signature, ToolAssignment, User


def _iso(value):
    return value.isoformat() if value else None


def serialize_user(user: User) -> dict:
    return {
        "id": user.id,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "address": user.address,
        "email": user.email,
    }


def serialize_signature(sig: Optional[Signature]) -> Optional[dict]:
    if not sig:
        return None
    return {
        "type": sig.type,
        "signature": sig.signature,
        "initials": sig.initials,
        "updated_at": _iso(sig.updated_at),
    }


def serialize_assignment(row: ToolAssignment, viewer_email: Optional[str] = None) -> dict:
    out = {
        "email": row.email,
        "name": row.name,
        "status": row.status,
        "signed_at": _iso(row.signed_at),
    }
    if viewer_email is None or viewer_email == row.email:
        out["signature_data"] = row.signature_data
        out["signature_kind"] = row.signature_kind
    return out


def serialize_tool(
    tool: DocumentTool,
    assignments: Sequence[ToolAssignment] = (),
    viewer_email: Optional[str] = None,
) -> dict:
    """Nested tool shape; viewer_email redacts other signers' captured data."""
    return {
        "tool_id": tool.tool_id,
        "type": tool.type,
        "label": tool.label,
        "position": {"x": tool.x, "y": tool.y, "page": tool.page},
        "dimensions": {"width": tool.width, "height": tool.height},
        "style": {
            "font_family": tool.font_family,
            "font_size": tool.font_size,
            "font_color": tool.font_color,
            "bold": tool.bold,
            "italic": tool.italic,
            "underline": tool.underline,
        },
        "value": {"kind": tool.value_kind, "value": tool.value} if tool.value_kind else None,
        "assigned_recipients": [serialize_assignment(a, viewer_email) for a in assignments],
        "updated_at": _iso(tool.updated_at),
    }


def serialize_tools(tools, grouped, viewer_email: Optional[str] = None) -> List[dict]:
    return [serialize_tool(t, grouped.get(t.id, []), viewer_email) for t in tools]


def serialize_recipient(r: DocumentRecipient, include_token: bool = False) -> dict:
    out = {
        "id": r.id,
        "email": r.email,
        "name": r.name,
        "status": r.status,
        "order": r.order,
        "signed_at": _iso(r.signed_at),
        "viewed_at": _iso(r.viewed_at),
        "last_accessed_at": _iso(r.last_accessed_at),
        "access_count": r.access_count,
        "reminders": list(r.reminders or []),
        "decline_reason": r.decline_reason,
        "declined_at": _iso(r.declined_at),
        "retired_at": _iso(r.retired_at),
    }
    if include_token:
        out["token"] = r.token
    return out


def serialize_document(doc: Document, recipients: Optional[Sequence[DocumentRecipient]] = None, include_tokens: bool = False) -> dict:
    out = {
        "id": doc.id,
        "owner_id": doc.owner_id,
        "name": doc.name,
        "filename": doc.filename,
        "file_type": doc.file_type,
        "size": len(doc.content or b""),
        "status": doc.status,
        "published_status": doc.published_status,
        "publish_link": doc.publish_link,
        "publish_link_expiry": _iso(doc.publish_link_expiry),
        "published_at": _iso(doc.published_at),
        "recipients_notified": list(doc.recipients_notified or []),
        "created_at": _iso(doc.created_at),
        "updated_at": _iso(doc.updated_at),
        "completed_at": _iso(doc.completed_at),
        "cancelled_at": _iso(doc.cancelled_at),
        "cancellation_reason": doc.cancellation_reason,
    }
    if recipients is not None:
        out["recipients"] = [serialize_recipient(r, include_token=include_tokens) for r in recipients]
    return out


def serialize_activity(entry: Activity) -> dict:
    return {
        "id": entry.id,
        "type": entry.type,
        "title": entry.title,
        "description": entry.description,
        "document_id": entry.document_id,
        "created_at": _iso(entry.created_at),
        "hash": entry.hash,
    }
