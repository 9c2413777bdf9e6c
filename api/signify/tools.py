import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import exists, update
from sqlmodel import Session, select

from .assignments import add_assignment, assignments_by_tool, assignments_for, get_tool, has_signed, settle
from .capture import from_saved, normalize_value
from .errors import Conflict, InvalidState, ValidationError
from .lifecycle import ensure_editable, get_owned_document
from .models import (
    SIGNATURE_IMAGE,
    SIGNED,
    TEXT,
    Document,
    DocumentRecipient,
    DocumentTool,
    Signature,
    ToolAssignment,
    User,
    is_recipient_tool,
)
from .publishing import notify_recipients
from .schemas import ToolPatch, ToolSpec, ToolStyle, ToolValue

logger = logging.getLogger(__name__)

STYLE_FIELDS = ("font_family", "font_size", "font_color", "bold", "italic", "underline")


def _owner_value(session: Session, owner: User, tool_type: str) -> Optional[dict]:
    """Value of an owner field, taken from the owner's profile and saved signature."""
    if tool_type == "my_email":
        return {"kind": TEXT, "value": owner.email}
    if tool_type == "my_fullname":
        return {"kind": TEXT, "value": owner.full_name}
    saved = session.exec(select(Signature).where(Signature.user_id == owner.id)).first()
    if not saved:
        return None
    return from_saved(saved, initials=(tool_type == "my_initial"))


def _check_value(tool_type: str, value: Optional[ToolValue]) -> Optional[dict]:
    if value is None:
        return None
    if tool_type in ("my_email", "my_fullname", "recipient_email", "recipient_fullname") and value.kind != TEXT:
        raise ValidationError(f"{tool_type} takes a text value")
    if is_recipient_tool(tool_type) and value.kind == SIGNATURE_IMAGE:
        # recipients capture their own images; the owner may only prefill text
        raise ValidationError("recipient fields cannot be prefilled with an image")
    return {"kind": value.kind, "value": normalize_value(value.kind, value.value)}


def _apply_style(values: dict, style: Optional[ToolStyle]):
    if style is None:
        return
    for key in STYLE_FIELDS:
        val = getattr(style, key)
        if val is not None:
            values[key] = val


def _spec_values(session: Session, owner: User, spec: ToolSpec) -> dict:
    if not is_recipient_tool(spec.type) and spec.assigned_recipients:
        raise ValidationError(f"{spec.type} fields are filled by the owner and take no recipients")
    values = {
        "type": spec.type,
        "label": spec.label,
        "x": spec.position.x,
        "y": spec.position.y,
        "page": spec.position.page,
        "width": spec.dimensions.width,
        "height": spec.dimensions.height,
    }
    _apply_style(values, spec.style)
    value = _check_value(spec.type, spec.value)
    if value is None and not is_recipient_tool(spec.type):
        value = _owner_value(session, owner, spec.type)
    values["value_kind"] = value["kind"] if value else None
    values["value"] = value["value"] if value else None
    return values


def _matches(tool: DocumentTool, values: dict) -> bool:
    return all(getattr(tool, key) == val for key, val in values.items())


def _assign_all(session: Session, doc: Document, tool: DocumentTool, spec: ToolSpec) -> List[DocumentRecipient]:
    """Make the tool's assignments match spec; signed assignments are never dropped."""
    wanted = {r.email: r for r in spec.assigned_recipients}
    for row in assignments_for(session, tool):
        if row.email in wanted:
            continue
        if row.status == SIGNED:
            raise InvalidState(f"{row.email} already signed tool {tool.tool_id}")
        session.delete(row)
    session.flush()
    issued = []
    for ref in spec.assigned_recipients:
        _, recipient = add_assignment(session, doc, tool, ref)
        if recipient:
            issued.append(recipient)
    return issued


def _notify_issued(session: Session, doc: Document, owner: User, issued: Sequence[DocumentRecipient]):
    if not issued:
        return
    notified = notify_recipients(doc, owner, issued)
    if notified:
        doc.recipients_notified = sorted(set(doc.recipients_notified or []) | set(notified))
        session.add(doc)
        session.commit()


def _upsert(session: Session, doc: Document, owner: User, spec: ToolSpec) -> Tuple[DocumentTool, List[DocumentRecipient]]:
    values = _spec_values(session, owner, spec)
    tool = session.exec(
        select(DocumentTool).where(DocumentTool.document_id == doc.id, DocumentTool.tool_id == spec.tool_id)
    ).first()
    if tool is None:
        tool = DocumentTool(document_id=doc.id, tool_id=spec.tool_id, **values)
        session.add(tool)
        session.flush()
    elif has_signed(session, tool):
        if not _matches(tool, values):
            raise InvalidState(f"tool {spec.tool_id} has been signed and cannot be changed")
    else:
        for key, val in values.items():
            setattr(tool, key, val)
        tool.updated_at = datetime.utcnow()
        session.add(tool)
    issued = _assign_all(session, doc, tool, spec)
    return tool, issued


def place_tool(session: Session, user: User, document_id: int, spec: ToolSpec) -> DocumentTool:
    """Create or overwrite a single tool identified by its tool_id."""
    doc = get_owned_document(session, document_id, user)
    ensure_editable(doc)
    tool, issued = _upsert(session, doc, user, spec)
    settle(session, doc)
    session.commit()
    session.refresh(tool)
    _notify_issued(session, doc, user, issued)
    return tool


def update_tool(session: Session, user: User, document_id: int, tool_id: str, patch: ToolPatch) -> DocumentTool:
    """Patch one tool in place.

    The row is written with a single UPDATE guarded on there being no signed
    assignment, so edits to other tools never overwrite each other and an edit
    racing a signature loses with Conflict.
    """
    doc = get_owned_document(session, document_id, user)
    ensure_editable(doc)
    tool = get_tool(session, doc.id, tool_id)
    if has_signed(session, tool):
        raise InvalidState(f"tool {tool_id} has been signed and cannot be changed")
    values = {}
    if patch.label is not None:
        values["label"] = patch.label
    if patch.position is not None:
        values.update(x=patch.position.x, y=patch.position.y, page=patch.position.page)
    if patch.dimensions is not None:
        values.update(width=patch.dimensions.width, height=patch.dimensions.height)
    _apply_style(values, patch.style)
    if patch.value is not None:
        value = _check_value(tool.type, patch.value)
        values.update(value_kind=value["kind"], value=value["value"])
    if not values:
        return tool
    values["updated_at"] = datetime.utcnow()
    signed = exists().where(ToolAssignment.tool_pk == tool.id, ToolAssignment.status == SIGNED)
    result = session.exec(
        update(DocumentTool)
        .where(DocumentTool.id == tool.id, ~signed)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        session.rollback()
        raise Conflict(f"tool {tool_id} was signed while it was being changed")
    session.commit()
    session.refresh(tool)
    return tool


def delete_tool(session: Session, user: User, document_id: int, tool_id: str):
    doc = get_owned_document(session, document_id, user)
    ensure_editable(doc)
    tool = get_tool(session, doc.id, tool_id)
    if has_signed(session, tool):
        raise InvalidState(f"tool {tool_id} has been signed and cannot be removed")
    for row in assignments_for(session, tool):
        session.delete(row)
    session.delete(tool)
    session.flush()
    settle(session, doc)
    session.commit()
    logger.info("document %s: tool %s removed", doc.id, tool_id)


def replace_tools(session: Session, user: User, document_id: int, specs: Sequence[ToolSpec]) -> List[DocumentTool]:
    """Make the document's tools exactly the given list.

    Every spec is validated before anything is written. Resubmitting the same
    list is a no-op; signed tools must come back unchanged.
    """
    doc = get_owned_document(session, document_id, user)
    ensure_editable(doc)
    seen = set()
    for spec in specs:
        if spec.tool_id in seen:
            raise ValidationError(f"duplicate tool_id {spec.tool_id}")
        seen.add(spec.tool_id)
        _spec_values(session, user, spec)

    existing = session.exec(select(DocumentTool).where(DocumentTool.document_id == doc.id)).all()
    signed_ids = {t.tool_id for t in existing if has_signed(session, t)}
    missing = signed_ids - seen
    if missing:
        raise InvalidState(f"signed tools cannot be removed: {', '.join(sorted(missing))}")

    issued: List[DocumentRecipient] = []
    try:
        for tool in existing:
            if tool.tool_id not in seen:
                for row in assignments_for(session, tool):
                    session.delete(row)
                session.delete(tool)
        session.flush()
        for spec in specs:
            _, new = _upsert(session, doc, user, spec)
            issued.extend(new)
        settle(session, doc)
        session.commit()
    except Exception:
        session.rollback()
        raise
    _notify_issued(session, doc, user, issued)
    return fetch_tools(session, doc.id)


def fetch_tools(session: Session, document_id: int) -> List[DocumentTool]:
    return session.exec(
        select(DocumentTool).where(DocumentTool.document_id == document_id).order_by(DocumentTool.page, DocumentTool.id)
    ).all()


def fetch_tools_for_owner(session: Session, user: User, document_id: int) -> Tuple[List[DocumentTool], Dict[int, List[ToolAssignment]]]:
    doc = get_owned_document(session, document_id, user)
    return fetch_tools(session, doc.id), assignments_by_tool(session, doc.id)


def fetch_tools_for_recipient(
    session: Session, doc: Document, recipient: DocumentRecipient
) -> Tuple[List[DocumentTool], Dict[int, List[ToolAssignment]]]:
    """Only the tools assigned to this recipient.

    Other signers' captured data is dropped by the serializer, which is
    given the recipient's email as the viewer.
    """
    grouped = assignments_by_tool(session, doc.id)
    mine = {pk for pk, rows in grouped.items() if any(r.email == recipient.email for r in rows)}
    tools = [t for t in fetch_tools(session, doc.id) if t.id in mine]
    return tools, grouped
