
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Dict, List, Literal, Optional

from .config import DEFAULT_EXPIRES_IN_DAYS
from .models import TOOL_TYPES


def _normalize_email(value: str) -> str:
    value = (value or "").strip().lower()
    if "@" not in value or value.startswith("@") or value.endswith("@"):
        raise ValueError("invalid email address")
    return value


class UserCreate(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    address: str = ""
    email: str
    password: str = Field(min_length=6)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _normalize_email(value)


class LoginRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _normalize_email(value)


class SignatureUpsert(BaseModel):
    type: Literal["premade", "drawn"]
    signature: str = Field(min_length=1)
    initials: str = ""


class RecipientRef(BaseModel):
    email: str
    name: Optional[str] = None
    order: Optional[int] = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _normalize_email(value)


class Position(BaseModel):
    x: float
    y: float
    page: int = Field(default=1, ge=1)


class Dimensions(BaseModel):
    width: float = Field(gt=0)
    height: float = Field(gt=0)


class ToolStyle(BaseModel):
    font_family: Optional[str] = None
    font_size: Optional[float] = Field(default=None, gt=0)
    font_color: Optional[str] = None
    bold: Optional[bool] = None
    italic: Optional[bool] = None
    underline: Optional[bool] = None


class ToolValue(BaseModel):
    kind: Literal["text", "signature_image"]
    value: str


class ToolSpec(BaseModel):
    tool_id: str = Field(min_length=1)
    type: str
    label: Optional[str] = None
    position: Position
    dimensions: Dimensions
    style: ToolStyle = ToolStyle()
    value: Optional[ToolValue] = None
    assigned_recipients: List[RecipientRef] = []
    # legacy single assignment, folded into assigned_recipients
    assigned_to_recipient: Optional[RecipientRef] = None

    @field_validator("type")
    @classmethod
    def known_type(cls, value: str) -> str:
        if value not in TOOL_TYPES:
            raise ValueError(f"unknown tool type {value!r}")
        return value

    @model_validator(mode="after")
    def fold_legacy_assignment(self):
        if self.assigned_to_recipient is not None:
            emails = {r.email for r in self.assigned_recipients}
            if self.assigned_to_recipient.email not in emails:
                self.assigned_recipients.append(self.assigned_to_recipient)
            self.assigned_to_recipient = None
        return self


class ToolPatch(BaseModel):
    label: Optional[str] = None
    position: Optional[Position] = None
    dimensions: Optional[Dimensions] = None
    style: Optional[ToolStyle] = None
    value: Optional[ToolValue] = None


class ToolsReplace(BaseModel):
    tools: List[ToolSpec]


class DocumentUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)


class PublishRequest(BaseModel):
    recipients: List[RecipientRef] = []
    expires_in_days: int = DEFAULT_EXPIRES_IN_DAYS


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class DeclineRequest(BaseModel):
    reason: Optional[str] = None


class SignSubmit(BaseModel):
    fields: Dict[str, ToolValue]  # tool_id -> captured value

    @field_validator("fields")
    @classmethod
    def not_empty(cls, value):
        if not value:
            raise ValueError("at least one field is required")
        return value
