import base64

import httpx
import pytest

from signify.client import (
    ApiError,
    FIELDS_COMPLETE,
    FIELDS_PENDING,
    SIGNING,
    SUBMITTED,
    SessionError,
    SignifyClient,
    SigningSession,
    ToolStore,
)

from helpers import SIGNATURE_DATA_URL, publish, put_tools, register, token_for, tool, upload


def _owner_client(client):
    register(client)
    api = SignifyClient(client)
    api.login("alice@example.com", "secret123")
    return api


def test_api_errors_carry_kind(client):
    api = _owner_client(client)
    with pytest.raises(ApiError) as err:
        api.get_tools(9999)
    assert err.value.kind == "NotFound"
    assert err.value.status_code == 404

    anonymous = SignifyClient(client)
    with pytest.raises(ApiError) as err:
        anonymous.get_signature()
    assert err.value.status_code == 401


def test_tool_store_patches_then_bulk_syncs(client):
    api = _owner_client(client)
    headers = {"Authorization": f"Bearer {api.token}"}
    doc = upload(client, headers)
    store = ToolStore(api)
    assert store.load(doc["id"]) == []

    store.place(doc["id"], tool("a", recipients=["bob@example.com"]))
    store.place(doc["id"], tool("b", type_="recipient_fullname", y=300))
    store.assign(doc["id"], "b", "Carol@Example.com", name="Carol")
    assert store.is_dirty(doc["id"])
    synced = store.sync(doc["id"])
    assert [t["tool_id"] for t in synced] == ["a", "b"]
    assert synced[1]["assigned_recipients"] == [{"email": "carol@example.com", "name": "Carol"}]
    assert not store.is_dirty(doc["id"])

    store.move(doc["id"], "a", 200, 250, page=1)
    store.resize(doc["id"], "b", 220, 40)
    store.style(doc["id"], "b", font_size=16)
    store.sync(doc["id"])

    server = {t["tool_id"]: t for t in api.get_tools(doc["id"])}
    assert server["a"]["position"] == {"x": 200, "y": 250, "page": 1}
    assert server["b"]["dimensions"] == {"width": 220, "height": 40}
    assert server["b"]["style"]["font_size"] == 16

    store.remove(doc["id"], "b")
    assert [t["tool_id"] for t in store.sync(doc["id"])] == ["a"]
    # syncing an unchanged store sends nothing and changes nothing
    assert [t["tool_id"] for t in store.sync(doc["id"])] == ["a"]


def _published_for_bob(client, tools):
    headers = register(client)
    doc = upload(client, headers)
    put_tools(client, headers, doc["id"], tools)
    return publish(client, headers, doc["id"])


def test_signing_session_happy_path(client):
    published = _published_for_bob(client, [
        tool("sig", recipients=["bob@example.com"]),
        tool("init", type_="recipient_initial", y=200, recipients=["bob@example.com"]),
        tool("name", type_="recipient_fullname", y=300, recipients=["bob@example.com"]),
    ])
    session = SigningSession(SignifyClient(client), published["publish_link"], token_for(published, "bob@example.com"))
    session.open()
    assert session.state == FIELDS_PENDING
    assert sorted(session.remaining) == ["init", "name", "sig"]

    session.select("sig")
    assert session.state == SIGNING
    with pytest.raises(SessionError):
        session.select("init")
    session.capture_drawn([[(5, 5), (80, 40)]])

    session.select("init")
    session.capture_saved({"type": "premade", "signature": "Bob Signer", "initials": "BS"})
    assert session.captures["init"] == {"kind": "text", "value": "BS"}

    session.select("name")
    with pytest.raises(SessionError):
        session.capture_drawn([[(0, 0), (1, 1)]])
    session.capture_text("Bob Signer")
    assert session.state == FIELDS_COMPLETE

    result = session.submit()
    assert session.state == SUBMITTED
    assert result["completed"] is True


def test_signing_session_cancel_and_abandon(client):
    published = _published_for_bob(client, [tool("sig", recipients=["bob@example.com"])])
    session = SigningSession(SignifyClient(client), published["publish_link"], token_for(published, "bob@example.com"))
    session.open()

    session.select("sig")
    session.cancel_capture()
    assert session.state == FIELDS_PENDING
    assert session.captures == {}
    with pytest.raises(SessionError):
        session.submit()

    session.select("sig")
    session.capture_upload(base64.b64decode(SIGNATURE_DATA_URL.split(",", 1)[1]))
    session.abandon()
    assert session.captures == {}

    # abandoning sends nothing: the field is still open on the server
    reopened = SigningSession(SignifyClient(client), published["publish_link"], token_for(published, "bob@example.com")).open()
    assert reopened.remaining == ["sig"]


class FlakyClient(SignifyClient):
    def __init__(self, http):
        super().__init__(http)
        self.failures = 1

    def submit_signatures(self, publish_link, recipient_token, fields):
        if self.failures:
            self.failures -= 1
            raise httpx.ConnectError("connection reset")
        return super().submit_signatures(publish_link, recipient_token, fields)


def test_failed_submit_keeps_captures(client):
    published = _published_for_bob(client, [tool("sig", recipients=["bob@example.com"])])
    session = SigningSession(FlakyClient(client), published["publish_link"], token_for(published, "bob@example.com"))
    session.open()
    session.select("sig")
    session.capture_drawn([[(5, 5), (80, 40)]])

    with pytest.raises(httpx.TransportError):
        session.submit()
    assert session.state == FIELDS_COMPLETE
    assert list(session.captures) == ["sig"]

    assert session.submit()["completed"] is True


def test_already_signed_session_opens_as_submitted(client):
    published = _published_for_bob(client, [tool("sig", recipients=["bob@example.com"])])
    token = token_for(published, "bob@example.com")
    first = SigningSession(SignifyClient(client), published["publish_link"], token).open()
    first.select("sig")
    first.capture_text("Bob")
    first.submit()

    again = SigningSession(SignifyClient(client), published["publish_link"], token).open()
    assert again.state == SUBMITTED
