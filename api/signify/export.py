# Flatten a document: stamp every filled tool onto its page with reportlab,
# merge the overlays with pypdf, then append a certificate page.

import hashlib
from datetime import datetime
from io import BytesIO
from typing import Dict, List, Sequence

from pypdf import PdfReader, PdfWriter
from pypdf.errors import PyPdfError
from reportlab.lib.colors import HexColor, black
from reportlab.lib.pagesizes import letter
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas
from sqlmodel import Session

from .assignments import assignments_by_tool
from .errors import ValidationError
from .lifecycle import get_owned_document
from .models import SIGNATURE_IMAGE, SIGNED, Document, DocumentRecipient, User
from .publishing import active_recipients
from .tools import fetch_tools
from .utils import data_url_to_bytes, sha256_bytes

FONTS = {
    (False, False): "Helvetica",
    (True, False): "Helvetica-Bold",
    (False, True): "Helvetica-Oblique",
    (True, True): "Helvetica-BoldOblique",
}


def _color(value):
    try:
        return HexColor(value or "#000000")
    except ValueError:
        return black


def _draw_text(c, op):
    font = FONTS[(bool(op.get("bold")), bool(op.get("italic")))]
    size = op.get("font_size") or 12
    c.setFont(font, size)
    c.setFillColor(_color(op.get("font_color")))
    x, y, h = op["x"], op["y"], op["h"]
    # baseline sits a little above the bottom of the box
    baseline = y + max(0.0, (h - size) / 2) + size * 0.2
    c.drawString(x, baseline, op["text"])
    if op.get("underline"):
        width = c.stringWidth(op["text"], font, size)
        c.setStrokeColor(_color(op.get("font_color")))
        c.line(x, baseline - 2, x + width, baseline - 2)


def _overlay_page(width, height, draw_ops):
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=(width, height))
    for op in draw_ops:
        if op["type"] == "text":
            _draw_text(c, op)
        elif op["type"] == "image":
            png = data_url_to_bytes(op["data"])
            c.drawImage(
                ImageReader(BytesIO(png)), op["x"], op["y"],
                width=op["w"], height=op["h"], mask="auto", preserveAspectRatio=True,
            )
    c.showPage()
    c.save()
    return buf.getvalue()


def _op(tool, kind, value, x, w, page_height) -> dict:
    # tools are placed with a top-left origin; PDF space starts bottom-left
    y = page_height - tool.y - tool.height
    base = {"x": x, "y": y, "w": w, "h": tool.height}
    if kind == SIGNATURE_IMAGE:
        return {**base, "type": "image", "data": value}
    return {
        **base,
        "type": "text",
        "text": value,
        "font_size": tool.font_size,
        "font_color": tool.font_color,
        "bold": tool.bold,
        "italic": tool.italic,
        "underline": tool.underline,
    }


def _draw_ops(session: Session, doc: Document, reader: PdfReader) -> Dict[int, List[dict]]:
    num_pages = len(reader.pages)
    grouped = assignments_by_tool(session, doc.id)
    draw_map: Dict[int, List[dict]] = {}
    for tool in fetch_tools(session, doc.id):
        p = max(0, min(num_pages - 1, tool.page - 1))
        page_height = float(reader.pages[p].mediabox.height)
        ops = draw_map.setdefault(p, [])
        if tool.value_kind and tool.value:
            ops.append(_op(tool, tool.value_kind, tool.value, tool.x, tool.width, page_height))
        signed = [a for a in grouped.get(tool.id, []) if a.status == SIGNED and a.signature_data]
        if not signed:
            continue
        # several signers on one field share its width
        slot = tool.width / len(signed)
        for i, a in enumerate(signed):
            ops.append(_op(tool, a.signature_kind, a.signature_data, tool.x + i * slot, slot, page_height))
    return draw_map


def _append_certificate(writer: PdfWriter, doc: Document, owner: User, recipients: Sequence[DocumentRecipient], sha_original: str):
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    c.setFont("Helvetica-Bold", 14)
    c.drawString(72, 750, "Certificate of Completion")
    c.setFont("Helvetica", 10)
    lines = [
        f"Document: {doc.name}",
        f"Status: {doc.status}",
        f"Owner: {owner.full_name} <{owner.email}>",
        f"Published: {doc.published_at.isoformat() if doc.published_at else '-'}",
        f"Completed: {doc.completed_at.isoformat() if doc.completed_at else '-'}",
        f"SHA-256 (original): {sha_original}",
        f"Exported: {datetime.utcnow().isoformat()}Z",
        "",
        "Recipients:",
    ]
    for r in recipients:
        when = r.signed_at.isoformat() if r.signed_at else "-"
        lines.append(f"  {r.name or r.email} <{r.email}>  {r.status}  signed at {when}")
    y = 720
    for line in lines:
        c.drawString(72, y, line[:95])
        y -= 14
        if y < 72:
            c.showPage()
            c.setFont("Helvetica", 10)
            y = 750
    c.showPage()
    c.save()
    buf.seek(0)
    writer.append_pages_from_reader(PdfReader(buf))


def render_export(session: Session, doc: Document, owner: User) -> bytes:
    try:
        reader = PdfReader(BytesIO(doc.content))
        writer = PdfWriter()
        for page in reader.pages:
            writer.add_page(page)
        for pidx, ops in _draw_ops(session, doc, reader).items():
            if not ops:
                continue
            page = reader.pages[pidx]
            overlay = _overlay_page(float(page.mediabox.width), float(page.mediabox.height), ops)
            writer.pages[pidx].merge_page(PdfReader(BytesIO(overlay)).pages[0])
    except PyPdfError as exc:
        raise ValidationError(f"document is not a readable PDF: {exc}")
    recipients = active_recipients(session, doc.id)
    _append_certificate(writer, doc, owner, recipients, hashlib.sha256(doc.content).hexdigest())
    out = BytesIO()
    writer.write(out)
    return out.getvalue()


def export_document(session: Session, user: User, document_id: int):
    """Returns (pdf bytes, sha256 of the result)."""
    doc = get_owned_document(session, document_id, user)
    data = render_export(session, doc, user)
    return data, sha256_bytes(data)
