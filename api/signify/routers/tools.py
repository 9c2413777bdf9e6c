from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlmodel import Session

from .. import assignments, publishing
from .. import tools as tool_ops
from ..auth import get_optional_user, get_current_user, recipient_token
from ..db import get_session
from ..lifecycle import get_document
from ..models import User
from ..schemas import RecipientRef, ToolPatch, ToolSpec, ToolsReplace
from ..serializers import serialize_assignment, serialize_tool, serialize_tools

router = APIRouter()


@router.get("/{document_id}/tools")
def list_tools(
    document_id: int,
    token: Optional[str] = Depends(recipient_token),
    session: Session = Depends(get_session),
    user: Optional[User] = Depends(get_optional_user),
):
    """Owners see every tool; recipients see only their own fields."""
    if user and get_document(session, document_id).owner_id == user.id:
        tools, grouped = tool_ops.fetch_tools_for_owner(session, user, document_id)
        return {"tools": serialize_tools(tools, grouped)}
    if token:
        doc, recipient = publishing.resolve_recipient(session, token, document_id=document_id)
    elif user:
        doc, recipient = publishing.resolve_recipient_for_user(session, user, document_id)
    else:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    tools, grouped = tool_ops.fetch_tools_for_recipient(session, doc, recipient)
    return {"tools": serialize_tools(tools, grouped, viewer_email=recipient.email)}


@router.post("/{document_id}/tools")
def replace_tools(
    document_id: int,
    data: ToolsReplace,
    session: Session = Depends(get_session),
    user: User = Depends(get_current_user),
):
    tool_ops.replace_tools(session, user, document_id, data.tools)
    tools, grouped = tool_ops.fetch_tools_for_owner(session, user, document_id)
    return {"tools": serialize_tools(tools, grouped)}


@router.put("/{document_id}/tools/{tool_id}")
def place_tool(
    document_id: int,
    tool_id: str,
    data: ToolSpec,
    session: Session = Depends(get_session),
    user: User = Depends(get_current_user),
):
    data.tool_id = tool_id
    tool = tool_ops.place_tool(session, user, document_id, data)
    return serialize_tool(tool, assignments.assignments_for(session, tool))


@router.patch("/{document_id}/tools/{tool_id}")
def update_tool(
    document_id: int,
    tool_id: str,
    data: ToolPatch,
    session: Session = Depends(get_session),
    user: User = Depends(get_current_user),
):
    tool = tool_ops.update_tool(session, user, document_id, tool_id, data)
    return serialize_tool(tool, assignments.assignments_for(session, tool))


@router.delete("/{document_id}/tools/{tool_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_tool(
    document_id: int,
    tool_id: str,
    session: Session = Depends(get_session),
    user: User = Depends(get_current_user),
):
    tool_ops.delete_tool(session, user, document_id, tool_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{document_id}/tools/{tool_id}/recipients")
def assign_recipient(
    document_id: int,
    tool_id: str,
    data: RecipientRef,
    session: Session = Depends(get_session),
    user: User = Depends(get_current_user),
):
    row = assignments.assign_recipient(session, user, document_id, tool_id, data)
    return serialize_assignment(row)


@router.delete("/{document_id}/tools/{tool_id}/recipients/{email}", status_code=status.HTTP_204_NO_CONTENT)
def unassign_recipient(
    document_id: int,
    tool_id: str,
    email: str,
    session: Session = Depends(get_session),
    user: User = Depends(get_current_user),
):
    assignments.unassign_recipient(session, user, document_id, tool_id, email)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
