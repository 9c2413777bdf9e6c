import itertools
from datetime import datetime, timedelta

from sqlmodel import select

from signify import publishing
from signify.models import Document, DocumentRecipient

from helpers import as_recipient, image, publish, put_tools, register, sign, token_for, tool, upload


def _draft_with_recipients(client, headers, *emails):
    doc = upload(client, headers)
    put_tools(client, headers, doc["id"], [
        tool(f"sig-{i}", y=100 + 80 * i, recipients=[email]) for i, email in enumerate(emails)
    ])
    return doc


def test_publish_without_recipient_fields_fails_and_writes_nothing(client, db_session):
    headers = register(client)
    doc = upload(client, headers)
    put_tools(client, headers, doc["id"], [tool("mine", type_="my_fullname")])

    resp = client.post(f"/api/documents/{doc['id']}/publish", json={}, headers=headers)
    assert resp.status_code == 422
    assert resp.json()["error"] == "NoRecipients"

    stored = db_session.get(Document, doc["id"])
    assert stored.status == "draft"
    assert stored.publish_link is None
    assert db_session.exec(select(DocumentRecipient).where(DocumentRecipient.document_id == doc["id"])).all() == []


def test_publish_with_unassigned_recipient_field_fails(client):
    headers = register(client)
    doc = upload(client, headers)
    put_tools(client, headers, doc["id"], [
        tool("a", recipients=["bob@example.com"]),
        tool("b", y=300),
    ])
    resp = client.post(f"/api/documents/{doc['id']}/publish", json={}, headers=headers)
    assert resp.status_code == 422
    assert resp.json()["error"] == "ValidationError"
    assert "b" in resp.json()["detail"]


def test_publish_issues_unique_tokens_and_emails(client, sent_emails):
    headers = register(client)
    doc = _draft_with_recipients(client, headers, "bob@example.com", "carol@example.com", "dave@example.com")
    published = publish(client, headers, doc["id"], expires_in_days=7)

    assert published["status"] == "pending_signatures"
    assert published["published_status"] == "published"
    assert published["publish_link"]
    tokens = [r["token"] for r in published["recipients"]]
    assert len(tokens) == 3 and len(set(tokens)) == 3
    assert all(r["status"] == "pending" for r in published["recipients"])
    assert all(published["publish_link"] in r["signing_link"] for r in published["recipients"])
    assert sorted(m["to"] for m in sent_emails) == ["bob@example.com", "carol@example.com", "dave@example.com"]
    assert sorted(published["recipients_notified"]) == ["bob@example.com", "carol@example.com", "dave@example.com"]
    assert sent_emails[0]["reply_to"] == "alice@example.com"
    assert sent_emails[0]["sender_name"] == "Alice Owner via Signify"
    assert sent_emails[0]["subject"] == "Signature Requested: Lease"
    bob_link = next(r["signing_link"] for r in published["recipients"] if r["email"] == "bob@example.com")
    bob_mail = next(m for m in sent_emails if m["to"] == "bob@example.com")
    assert bob_link in bob_mail["text"]
    assert "Review &amp; Sign" in bob_mail["html"]

    expiry = datetime.fromisoformat(published["publish_link_expiry"])
    assert timedelta(days=6) < expiry - datetime.utcnow() <= timedelta(days=7)


def test_republish_reuses_tokens(client, sent_emails):
    headers = register(client)
    doc = _draft_with_recipients(client, headers, "bob@example.com")
    first = publish(client, headers, doc["id"])
    second = publish(client, headers, doc["id"])

    assert second["publish_link"] == first["publish_link"]
    assert token_for(second, "bob@example.com") == token_for(first, "bob@example.com")
    assert len(second["recipients"]) == 1
    assert len(sent_emails) == 1


def test_republish_issues_token_for_new_recipient_only(client, sent_emails):
    headers = register(client)
    doc = _draft_with_recipients(client, headers, "bob@example.com")
    first = publish(client, headers, doc["id"])
    put_tools(client, headers, doc["id"], [
        tool("sig-0", y=100, recipients=["bob@example.com"]),
        tool("sig-1", y=180, recipients=["carol@example.com"]),
    ])
    second = publish(client, headers, doc["id"])

    assert token_for(second, "bob@example.com") == token_for(first, "bob@example.com")
    assert token_for(second, "carol@example.com")
    assert [m["to"] for m in sent_emails] == ["bob@example.com", "carol@example.com"]


def test_colliding_token_is_regenerated(client, monkeypatch):
    headers = register(client)
    first_doc = _draft_with_recipients(client, headers, "bob@example.com")
    taken = token_for(publish(client, headers, first_doc["id"]), "bob@example.com")

    fresh = (f"fresh-token-{n}" for n in itertools.count())
    values = itertools.chain([taken], fresh)
    monkeypatch.setattr(publishing.secrets, "token_urlsafe", lambda nbytes=None: next(values))

    second_doc = _draft_with_recipients(client, headers, "carol@example.com")
    second = publish(client, headers, second_doc["id"])
    assert token_for(second, "carol@example.com") == "fresh-token-0"


def test_token_clash_at_insert_is_retried(client, monkeypatch, caplog):
    headers = register(client)
    first_doc = _draft_with_recipients(client, headers, "bob@example.com")
    taken = token_for(publish(client, headers, first_doc["id"]), "bob@example.com")

    # only the unique constraint can catch the clash now
    monkeypatch.setattr(publishing, "_token_taken", lambda session, token: False)
    fresh = (f"fresh-token-{n}" for n in itertools.count())
    values = itertools.chain([taken], fresh)
    monkeypatch.setattr(publishing.secrets, "token_urlsafe", lambda nbytes=None: next(values))

    second_doc = _draft_with_recipients(client, headers, "carol@example.com")
    second = publish(client, headers, second_doc["id"])
    assert token_for(second, "carol@example.com") == "fresh-token-0"
    assert "recipient token collision on attempt 1" in caplog.text
    assert second["status"] == "pending_signatures"


def test_expires_in_days_is_bounded(client):
    headers = register(client)
    doc = _draft_with_recipients(client, headers, "bob@example.com")
    for days in (0, 366):
        resp = client.post(f"/api/documents/{doc['id']}/publish", json={"expires_in_days": days}, headers=headers)
        assert resp.status_code == 422


def test_recipient_access_marks_viewed(client):
    headers = register(client)
    doc = _draft_with_recipients(client, headers, "bob@example.com")
    published = publish(client, headers, doc["id"])
    token = token_for(published, "bob@example.com")

    for _ in range(2):
        resp = client.get(f"/api/documents/published/{published['publish_link']}", headers=as_recipient(token))
        assert resp.status_code == 200
    body = resp.json()
    assert body["recipient"]["status"] == "viewed"
    assert body["recipient"]["access_count"] == 2
    assert body["recipient"]["viewed_at"]
    assert "token" not in body["recipient"]

    by_query = client.get(f"/api/documents/published/{published['publish_link']}?token={token}")
    assert by_query.status_code == 200
    pdf = client.get(f"/api/documents/published/{published['publish_link']}/file", headers=as_recipient(token))
    assert pdf.content.startswith(b"%PDF")


def test_unknown_token_is_forbidden(client):
    headers = register(client)
    doc = _draft_with_recipients(client, headers, "bob@example.com")
    published = publish(client, headers, doc["id"])
    resp = client.get(f"/api/documents/published/{published['publish_link']}", headers=as_recipient("nope"))
    assert resp.status_code == 403
    resp = client.get(f"/api/documents/published/{published['publish_link']}")
    assert resp.status_code == 403


def test_access_after_expiry_is_rejected_without_data(client, db_session):
    headers = register(client)
    doc = _draft_with_recipients(client, headers, "bob@example.com")
    published = publish(client, headers, doc["id"])

    stored = db_session.get(Document, doc["id"])
    stored.publish_link_expiry = datetime.utcnow() - timedelta(minutes=1)
    db_session.add(stored)
    db_session.commit()

    resp = client.get(
        f"/api/documents/published/{published['publish_link']}",
        headers=as_recipient(token_for(published, "bob@example.com")),
    )
    assert resp.status_code == 410
    assert resp.json() == {"error": "Expired", "detail": "signing link has expired"}

    owner_view = client.get(f"/api/documents/{doc['id']}", headers=headers).json()
    assert owner_view["status"] == "expired"


def test_completed_document_link_still_expires(client, db_session):
    headers = register(client)
    doc = _draft_with_recipients(client, headers, "bob@example.com")
    published = publish(client, headers, doc["id"])
    assert sign(client, published, "bob@example.com", {"sig-0": image()}).json()["completed"] is True

    stored = db_session.get(Document, doc["id"])
    stored.publish_link_expiry = datetime.utcnow() - timedelta(days=1)
    db_session.add(stored)
    db_session.commit()

    bob = as_recipient(token_for(published, "bob@example.com"))
    resp = client.get(f"/api/documents/published/{published['publish_link']}", headers=bob)
    assert resp.status_code == 410
    assert "tools" not in resp.json()
    assert client.get(f"/api/documents/published/{published['publish_link']}/file", headers=bob).status_code == 410
    assert client.get(f"/api/documents/{doc['id']}/tools", headers=bob).status_code == 410

    owner_view = client.get(f"/api/documents/{doc['id']}", headers=headers).json()
    assert owner_view["status"] == "completed"


def test_unpublish_keeps_signatures_and_blocks_tokens(client, db_session):
    headers = register(client)
    doc = _draft_with_recipients(client, headers, "bob@example.com", "carol@example.com")
    published = publish(client, headers, doc["id"])
    assert sign(client, published, "bob@example.com", {"sig-0": image()}).status_code == 200

    resp = client.post(f"/api/documents/{doc['id']}/unpublish", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "expired"
    assert resp.json()["published_status"] == "expired"
    again = client.post(f"/api/documents/{doc['id']}/unpublish", headers=headers)
    assert again.status_code == 200

    tools = client.get(f"/api/documents/{doc['id']}/tools", headers=headers).json()["tools"]
    bob = next(t for t in tools if t["tool_id"] == "sig-0")["assigned_recipients"][0]
    assert bob["status"] == "signed"
    assert bob["signature_data"].startswith("data:image/png;base64,")
    assert bob["signed_at"]

    resp = client.get(
        f"/api/documents/published/{published['publish_link']}",
        headers=as_recipient(token_for(published, "carol@example.com")),
    )
    assert resp.status_code == 410


def test_unpublish_draft_is_invalid(client):
    headers = register(client)
    doc = upload(client, headers)
    resp = client.post(f"/api/documents/{doc['id']}/unpublish", headers=headers)
    assert resp.status_code == 409
    assert resp.json()["error"] == "InvalidState"


def test_cancel_records_reason_and_blocks_recipients(client):
    headers = register(client)
    doc = _draft_with_recipients(client, headers, "bob@example.com")
    published = publish(client, headers, doc["id"])

    resp = client.post(f"/api/documents/{doc['id']}/cancel", json={"reason": "wrong terms"}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"
    assert resp.json()["cancellation_reason"] == "wrong terms"

    resp = client.get(
        f"/api/documents/published/{published['publish_link']}",
        headers=as_recipient(token_for(published, "bob@example.com")),
    )
    assert resp.status_code == 409
    assert client.post(f"/api/documents/{doc['id']}/cancel", headers=headers).status_code == 409
    assert client.post(f"/api/documents/{doc['id']}/publish", json={}, headers=headers).status_code == 409


def test_remind_resends_link(client, sent_emails):
    headers = register(client)
    doc = _draft_with_recipients(client, headers, "bob@example.com")
    published = publish(client, headers, doc["id"])
    rid = published["recipients"][0]["id"]

    resp = client.post(f"/api/documents/{doc['id']}/recipients/{rid}/remind", headers=headers)
    assert resp.status_code == 200
    assert len(resp.json()["reminders"]) == 1
    assert sent_emails[-1]["subject"].startswith("Reminder")
    assert "Alice Owner is waiting for your signature" in sent_emails[-1]["text"]

    sign(client, published, "bob@example.com", {"sig-0": image()})
    resp = client.post(f"/api/documents/{doc['id']}/recipients/{rid}/remind", headers=headers)
    assert resp.status_code == 409


def test_failed_reminder_is_upstream_failure(client, monkeypatch):
    headers = register(client)
    doc = _draft_with_recipients(client, headers, "bob@example.com")
    published = publish(client, headers, doc["id"])

    def broken(*args, **kwargs):
        raise OSError("smtp down")

    monkeypatch.setattr(publishing.mailer, "send_email", broken)
    rid = published["recipients"][0]["id"]
    resp = client.post(f"/api/documents/{doc['id']}/recipients/{rid}/remind", headers=headers)
    assert resp.status_code == 503
    assert resp.json()["error"] == "UpstreamFailure"


def _assert_frozen(client, headers, doc_id):
    for method, path, body in (
        ("post", "tools", {"tools": [tool("new")]}),
        ("put", "tools/sig-0", tool("sig-0", x=5)),
        ("patch", "tools/sig-0", {"position": {"x": 5, "y": 5, "page": 1}}),
        ("post", "publish", {}),
    ):
        resp = client.request(method, f"/api/documents/{doc_id}/{path}", json=body, headers=headers)
        assert resp.status_code == 409, (method, path)
        assert resp.json()["error"] == "InvalidState", (method, path)


def test_completed_documents_reject_edits(client):
    headers = register(client)
    doc = _draft_with_recipients(client, headers, "bob@example.com")
    published = publish(client, headers, doc["id"])
    assert sign(client, published, "bob@example.com", {"sig-0": image()}).json()["completed"] is True

    _assert_frozen(client, headers, doc["id"])
    assert client.patch(f"/api/documents/{doc['id']}", json={"name": "x"}, headers=headers).status_code == 409
    assert client.post(f"/api/documents/{doc['id']}/cancel", headers=headers).status_code == 409


def test_unpublished_documents_reject_edits(client):
    headers = register(client)
    doc = _draft_with_recipients(client, headers, "bob@example.com")
    publish(client, headers, doc["id"])
    assert client.post(f"/api/documents/{doc['id']}/unpublish", headers=headers).json()["status"] == "expired"

    _assert_frozen(client, headers, doc["id"])


def test_lapsed_documents_reject_edits(client, db_session):
    headers = register(client)
    doc = _draft_with_recipients(client, headers, "bob@example.com")
    publish(client, headers, doc["id"])
    stored = db_session.get(Document, doc["id"])
    stored.publish_link_expiry = datetime.utcnow() - timedelta(minutes=1)
    db_session.add(stored)
    db_session.commit()

    _assert_frozen(client, headers, doc["id"])
    assert client.get(f"/api/documents/{doc['id']}", headers=headers).json()["status"] == "expired"


def test_cancelled_documents_reject_edits(client):
    headers = register(client)
    doc = _draft_with_recipients(client, headers, "bob@example.com")
    publish(client, headers, doc["id"])
    assert client.post(f"/api/documents/{doc['id']}/cancel", headers=headers).json()["status"] == "cancelled"

    _assert_frozen(client, headers, doc["id"])


def test_shared_with_me_lists_documents_for_recipient(client):
    owner = register(client)
    doc = _draft_with_recipients(client, owner, "bob@example.com")
    publish(client, owner, doc["id"])

    bob = register(client, email="bob@example.com", first_name="Bob", last_name="Signer")
    shared = client.get("/api/documents/shared-with-me", headers=bob).json()["documents"]
    assert [d["id"] for d in shared] == [doc["id"]]
    assert shared[0]["my_status"] == "pending"
