"""Python client for the Signify API.

``ToolStore`` keeps an owner's placed tools per document and pushes changes
back either as per-tool patches or, after structural edits, as one bulk
replace. ``SigningSession`` walks a recipient through capturing every field
assigned to them and submits the captures in one call.
"""
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import httpx

from . import capture

logger = logging.getLogger(__name__)

SIGNATURE_FIELDS = ("recipient_signature", "recipient_initial")
TEXT_FIELDS = ("recipient_email", "recipient_fullname")


class ApiError(Exception):
    def __init__(self, kind: str, detail: str, status_code: int):
        super().__init__(f"{kind}: {detail}")
        self.kind = kind
        self.detail = detail
        self.status_code = status_code


class SignifyClient:
    """Thin wrapper over an ``httpx.Client`` that raises ``ApiError`` on error bodies."""

    def __init__(self, http: httpx.Client, token: Optional[str] = None):
        self.http = http
        self.token = token

    def _headers(self, recipient_token: Optional[str] = None) -> dict:
        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if recipient_token:
            headers["X-Recipient-Token"] = recipient_token
        return headers

    def request(self, method: str, path: str, recipient_token: Optional[str] = None, **kwargs) -> httpx.Response:
        resp = self.http.request(method, path, headers=self._headers(recipient_token), **kwargs)
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {"detail": resp.text}
            kind = body.get("error") or ("Unauthorized" if resp.status_code == 401 else "HTTPError")
            raise ApiError(kind, str(body.get("detail")), resp.status_code)
        return resp

    def login(self, email: str, password: str) -> str:
        data = self.request("POST", "/login", json={"email": email, "password": password}).json()
        self.token = data["access_token"]
        return self.token

    def get_signature(self) -> Optional[dict]:
        return self.request("GET", "/api/users/signature").json().get("signature")

    def get_tools(self, document_id: int) -> List[dict]:
        return self.request("GET", f"/api/documents/{document_id}/tools").json()["tools"]

    def replace_tools(self, document_id: int, tools: Sequence[dict]) -> List[dict]:
        resp = self.request("POST", f"/api/documents/{document_id}/tools", json={"tools": list(tools)})
        return resp.json()["tools"]

    def patch_tool(self, document_id: int, tool_id: str, patch: dict) -> dict:
        return self.request("PATCH", f"/api/documents/{document_id}/tools/{tool_id}", json=patch).json()

    def open_published(self, publish_link: str, recipient_token: str) -> dict:
        return self.request("GET", f"/api/documents/published/{publish_link}", recipient_token=recipient_token).json()

    def submit_signatures(self, publish_link: str, recipient_token: str, fields: Dict[str, dict]) -> dict:
        resp = self.request(
            "POST",
            f"/api/documents/published/{publish_link}/sign",
            recipient_token=recipient_token,
            json={"fields": fields},
        )
        return resp.json()


def _as_spec(tool: dict) -> dict:
    """Server tool shape to the shape accepted by bulk replace."""
    spec = {
        "tool_id": tool["tool_id"],
        "type": tool["type"],
        "label": tool.get("label"),
        "position": dict(tool["position"]),
        "dimensions": dict(tool["dimensions"]),
        "style": dict(tool.get("style") or {}),
        "assigned_recipients": [
            {"email": a["email"], "name": a.get("name")} for a in tool.get("assigned_recipients", [])
        ],
    }
    if tool["type"].startswith("recipient_") and tool.get("value"):
        spec["value"] = dict(tool["value"])
    return spec


class ToolStore:
    """Client-side tool state keyed by document id.

    Moves, resizes and style edits are remembered as per-tool patches. Adding,
    removing or reassigning a tool marks the whole document for a bulk
    replace, which also carries any pending patches.
    """

    def __init__(self, client: SignifyClient):
        self.client = client
        self._tools: Dict[int, Dict[str, dict]] = {}
        self._structural = set()
        self._patches: Dict[int, Dict[str, dict]] = {}

    def load(self, document_id: int) -> List[dict]:
        tools = self.client.get_tools(document_id)
        self._reset(document_id, tools)
        return self.tools(document_id)

    def _reset(self, document_id: int, tools: Iterable[dict]):
        self._tools[document_id] = {t["tool_id"]: _as_spec(t) for t in tools}
        self._structural.discard(document_id)
        self._patches.pop(document_id, None)

    def tools(self, document_id: int) -> List[dict]:
        return list(self._tools.get(document_id, {}).values())

    def get(self, document_id: int, tool_id: str) -> dict:
        try:
            return self._tools[document_id][tool_id]
        except KeyError:
            raise KeyError(f"tool {tool_id} is not loaded for document {document_id}") from None

    def is_dirty(self, document_id: int) -> bool:
        return document_id in self._structural or bool(self._patches.get(document_id))

    def place(self, document_id: int, tool: dict) -> dict:
        spec = {
            "label": None,
            "style": {},
            "assigned_recipients": [],
            **tool,
        }
        spec.setdefault("position", {"x": 0, "y": 0, "page": 1})
        self._tools.setdefault(document_id, {})[spec["tool_id"]] = spec
        self._structural.add(document_id)
        return spec

    def patch(self, document_id: int, tool_id: str, patch: dict) -> dict:
        tool = self.get(document_id, tool_id)
        for key, val in patch.items():
            if isinstance(val, dict) and isinstance(tool.get(key), dict):
                tool[key].update(val)
            else:
                tool[key] = val
        pending = self._patches.setdefault(document_id, {}).setdefault(tool_id, {})
        for key, val in patch.items():
            if isinstance(val, dict):
                pending.setdefault(key, {}).update(val)
            else:
                pending[key] = val
        return tool

    def move(self, document_id: int, tool_id: str, x: float, y: float, page: Optional[int] = None) -> dict:
        position = {"x": x, "y": y, "page": page or self.get(document_id, tool_id)["position"].get("page", 1)}
        return self.patch(document_id, tool_id, {"position": position})

    def resize(self, document_id: int, tool_id: str, width: float, height: float) -> dict:
        return self.patch(document_id, tool_id, {"dimensions": {"width": width, "height": height}})

    def style(self, document_id: int, tool_id: str, **style) -> dict:
        return self.patch(document_id, tool_id, {"style": style})

    def assign(self, document_id: int, tool_id: str, email: str, name: Optional[str] = None) -> dict:
        tool = self.get(document_id, tool_id)
        email = email.strip().lower()
        if all(a["email"] != email for a in tool["assigned_recipients"]):
            tool["assigned_recipients"].append({"email": email, "name": name})
            self._structural.add(document_id)
        return tool

    def unassign(self, document_id: int, tool_id: str, email: str) -> dict:
        tool = self.get(document_id, tool_id)
        email = email.strip().lower()
        kept = [a for a in tool["assigned_recipients"] if a["email"] != email]
        if len(kept) != len(tool["assigned_recipients"]):
            tool["assigned_recipients"] = kept
            self._structural.add(document_id)
        return tool

    def remove(self, document_id: int, tool_id: str):
        if self._tools.get(document_id, {}).pop(tool_id, None) is not None:
            self._structural.add(document_id)
            self._patches.get(document_id, {}).pop(tool_id, None)

    def sync(self, document_id: int) -> List[dict]:
        """Push local changes. Safe to call repeatedly: the bulk replace is idempotent."""
        if document_id in self._structural:
            tools = self.client.replace_tools(document_id, self.tools(document_id))
            self._reset(document_id, tools)
        else:
            for tool_id, patch in list(self._patches.get(document_id, {}).items()):
                self.client.patch_tool(document_id, tool_id, patch)
                self._patches[document_id].pop(tool_id)
        return self.tools(document_id)


class SessionError(Exception):
    pass


LOADING = "loading"
FIELDS_PENDING = "fields_pending"
SIGNING = "signing"
FIELDS_COMPLETE = "fields_complete"
SUBMITTED = "submitted"
ABANDONED = "abandoned"


class SigningSession:
    """One recipient's pass over a published document.

    loading -> fields_pending -> signing(field) -> fields_complete -> submitted

    Only one field is in signing at a time. Nothing reaches the server until
    submit(); a failed submit keeps every capture so it can be retried.
    """

    def __init__(self, client: SignifyClient, publish_link: str, token: str):
        self.client = client
        self.publish_link = publish_link
        self.token = token
        self.state = LOADING
        self.document: Optional[dict] = None
        self.fields: Dict[str, dict] = {}
        self.captures: Dict[str, dict] = {}
        self.current: Optional[str] = None
        self.result: Optional[dict] = None

    def open(self) -> "SigningSession":
        if self.state != LOADING:
            raise SessionError(f"session is {self.state}")
        data = self.client.open_published(self.publish_link, self.token)
        self.document = data["document"]
        me = data["recipient"]["email"]
        self.fields = {}
        for tool in data["tools"]:
            mine = [a for a in tool["assigned_recipients"] if a["email"] == me]
            if mine and mine[0]["status"] != "signed":
                self.fields[tool["tool_id"]] = tool
        self.state = FIELDS_PENDING if self.fields else SUBMITTED
        return self

    @property
    def remaining(self) -> List[str]:
        return [tool_id for tool_id in self.fields if tool_id not in self.captures]

    def select(self, tool_id: str):
        if self.state not in (FIELDS_PENDING, FIELDS_COMPLETE):
            raise SessionError(f"cannot select a field while {self.state}")
        if tool_id not in self.fields:
            raise SessionError(f"{tool_id} is not a field assigned to you")
        self.current = tool_id
        self.state = SIGNING

    def _field(self) -> dict:
        if self.state != SIGNING or self.current is None:
            raise SessionError("no field selected")
        return self.fields[self.current]

    def _store(self, value: dict):
        self.captures[self.current] = value
        self.current = None
        self.state = FIELDS_PENDING if self.remaining else FIELDS_COMPLETE

    def _require_signature_field(self) -> dict:
        field = self._field()
        if field["type"] not in SIGNATURE_FIELDS:
            raise SessionError(f"{field['type']} takes text, not a signature")
        return field

    def capture_saved(self, signature: Optional[dict] = None):
        """Use the recipient's saved signature, fetched from their account when not given."""
        field = self._require_signature_field()
        signature = signature or self.client.get_signature()
        if not signature:
            raise SessionError("no saved signature")
        payload = signature.get("initials") if field["type"] == "recipient_initial" else signature.get("signature")
        value = capture.saved_value(signature.get("type", "drawn"), payload)
        if value is None:
            raise SessionError(f"saved signature has nothing for a {field['type']} field")
        self._store(value)

    def capture_drawn(self, strokes: Sequence[Sequence[Tuple[float, float]]]):
        self._require_signature_field()
        self._store({"kind": "signature_image", "value": capture.from_strokes(strokes)})

    def capture_upload(self, data: bytes):
        self._require_signature_field()
        self._store({"kind": "signature_image", "value": capture.from_upload(data)})

    def capture_text(self, text: str):
        self._field()
        text = (text or "").strip()
        if not text:
            raise SessionError("text is empty")
        self._store({"kind": "text", "value": text})

    def cancel_capture(self):
        if self.state != SIGNING:
            raise SessionError("no capture in progress")
        self.current = None
        self.state = FIELDS_PENDING if self.remaining else FIELDS_COMPLETE

    def abandon(self):
        """Drop the session locally; nothing is sent."""
        self.captures = {}
        self.current = None
        self.state = ABANDONED

    def submit(self) -> dict:
        if self.state != FIELDS_COMPLETE:
            raise SessionError(f"cannot submit while {self.state}")
        try:
            self.result = self.client.submit_signatures(self.publish_link, self.token, self.captures)
        except httpx.TransportError:
            logger.warning("submit for %s failed in transit; keeping %s capture(s)", self.publish_link, len(self.captures))
            raise
        self.state = SUBMITTED
        return self.result
