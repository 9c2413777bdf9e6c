from io import BytesIO

from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

SIMPLE_SIGNATURE_B64 = "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8/5+hHgAHggJ/Pf8icQAAAABJRU5ErkJggg=="
SIGNATURE_DATA_URL = f"data:image/png;base64,{SIMPLE_SIGNATURE_B64}"


def make_pdf(pages=2) -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    for n in range(pages):
        c.drawString(72, 720, f"Agreement page {n + 1}")
        c.showPage()
    c.save()
    return buf.getvalue()


def register(client, email="alice@example.com", first_name="Alice", last_name="Owner", password="secret123"):
    resp = client.post(
        "/register",
        json={"first_name": first_name, "last_name": last_name, "email": email, "password": password},
    )
    assert resp.status_code == 201, resp.text
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


def upload(client, headers, name="Lease", content=None):
    resp = client.post(
        "/api/documents/upload",
        files={"file": ("lease.pdf", content if content is not None else make_pdf(), "application/pdf")},
        data={"name": name},
        headers=headers,
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def tool(tool_id, type_="recipient_signature", x=100, y=100, page=1, width=150, height=60, recipients=(), **extra):
    spec = {
        "tool_id": tool_id,
        "type": type_,
        "position": {"x": x, "y": y, "page": page},
        "dimensions": {"width": width, "height": height},
        "assigned_recipients": [
            r if isinstance(r, dict) else {"email": r} for r in recipients
        ],
    }
    spec.update(extra)
    return spec


def put_tools(client, headers, doc_id, tools):
    resp = client.post(f"/api/documents/{doc_id}/tools", json={"tools": tools}, headers=headers)
    assert resp.status_code == 200, resp.text
    return resp.json()["tools"]


def publish(client, headers, doc_id, **body):
    resp = client.post(f"/api/documents/{doc_id}/publish", json=body, headers=headers)
    assert resp.status_code == 200, resp.text
    return resp.json()


def token_for(published, email):
    for r in published["recipients"]:
        if r["email"] == email:
            return r["token"]
    raise AssertionError(f"{email} not among recipients")


def as_recipient(token):
    return {"X-Recipient-Token": token}


def sign(client, published, email, fields):
    return client.post(
        f"/api/documents/published/{published['publish_link']}/sign",
        json={"fields": fields},
        headers=as_recipient(token_for(published, email)),
    )


def image(value=SIGNATURE_DATA_URL):
    return {"kind": "signature_image", "value": value}


def text(value):
    return {"kind": "text", "value": value}
