
from typing import List, Optional
from datetime import datetime
from sqlalchemy import Column, JSON, Index, UniqueConstraint
from sqlmodel import SQLModel, Field as ORMField

# Document.status
DRAFT = "draft"
PENDING_SIGNATURES = "pending_signatures"
COMPLETED = "completed"
EXPIRED = "expired"
CANCELLED = "cancelled"
TERMINAL_STATUSES = frozenset({COMPLETED, EXPIRED, CANCELLED})

# Document.published_status
PUBLISHED = "published"

# DocumentRecipient.status, ToolAssignment.status
PENDING = "pending"
VIEWED = "viewed"
SIGNED = "signed"
DECLINED = "declined"

# DocumentTool.value_kind
TEXT = "text"
SIGNATURE_IMAGE = "signature_image"

OWNER_TOOL_TYPES = ("my_signature", "my_initial", "my_email", "my_fullname")
RECIPIENT_TOOL_TYPES = ("recipient_signature", "recipient_initial", "recipient_email", "recipient_fullname")
TOOL_TYPES = OWNER_TOOL_TYPES + RECIPIENT_TOOL_TYPES


def is_recipient_tool(tool_type: str) -> bool:
    return tool_type in RECIPIENT_TOOL_TYPES


class User(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    first_name: str
    last_name: str
    address: str = ""
    email: str = ORMField(index=True, unique=True)
    password_hash: str
    created_at: datetime = ORMField(default_factory=datetime.utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Signature(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    user_id: int = ORMField(unique=True, index=True)
    type: str = "drawn"  # premade|drawn
    signature: str
    initials: str = ""
    created_at: datetime = ORMField(default_factory=datetime.utcnow)
    updated_at: datetime = ORMField(default_factory=datetime.utcnow)


class Document(SQLModel, table=True):
    __table_args__ = (
        Index("ix_document_owner_expiry", "owner_id", "publish_link_expiry"),
    )

    id: Optional[int] = ORMField(default=None, primary_key=True)
    owner_id: int = ORMField(index=True)
    name: str
    filename: str
    file_type: str = "application/pdf"
    content: bytes
    status: str = ORMField(default=DRAFT, index=True)
    published_status: str = DRAFT  # draft|published|expired
    # NULLs never collide, so unpublished documents coexist without a link
    publish_link: Optional[str] = ORMField(default=None, unique=True)
    publish_link_expiry: Optional[datetime] = None
    published_at: Optional[datetime] = None
    recipients_notified: List[str] = ORMField(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = ORMField(default_factory=datetime.utcnow)
    updated_at: datetime = ORMField(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    cancelled_by: Optional[int] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None


class DocumentRecipient(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    document_id: int = ORMField(index=True)
    email: str = ORMField(index=True)
    name: Optional[str] = None
    token: str = ORMField(unique=True, index=True)
    status: str = PENDING  # pending|viewed|signed|declined|expired
    order: int = 1
    signed_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    access_count: int = 0
    reminders: List[str] = ORMField(default_factory=list, sa_column=Column(JSON))
    decline_reason: Optional[str] = None
    declined_at: Optional[datetime] = None
    retired_at: Optional[datetime] = None
    created_at: datetime = ORMField(default_factory=datetime.utcnow)


class DocumentTool(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("document_id", "tool_id", name="uq_document_tool"),
    )

    id: Optional[int] = ORMField(default=None, primary_key=True)
    document_id: int = ORMField(index=True)
    tool_id: str
    type: str  # one of TOOL_TYPES
    label: Optional[str] = None
    x: float
    y: float
    page: int = 1
    width: float
    height: float
    font_family: str = "Helvetica"
    font_size: float = 12
    font_color: str = "#000000"
    bold: bool = False
    italic: bool = False
    underline: bool = False
    value_kind: Optional[str] = None  # text|signature_image
    value: Optional[str] = None
    created_at: datetime = ORMField(default_factory=datetime.utcnow)
    updated_at: datetime = ORMField(default_factory=datetime.utcnow)


class ToolAssignment(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("tool_pk", "email", name="uq_tool_assignment"),
    )

    id: Optional[int] = ORMField(default=None, primary_key=True)
    tool_pk: int = ORMField(index=True)
    document_id: int = ORMField(index=True)
    email: str
    name: Optional[str] = None
    status: str = PENDING  # pending|signed
    signature_kind: Optional[str] = None
    signature_data: Optional[str] = None
    signed_at: Optional[datetime] = None


class Activity(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    user_id: int = ORMField(index=True)
    document_id: Optional[int] = ORMField(default=None, index=True)
    type: str  # document_uploaded|document_shared|document_signed|...
    title: str
    description: str = ""
    created_at: datetime = ORMField(default_factory=datetime.utcnow)
    prev_hash: Optional[str] = None
    hash: Optional[str] = None
