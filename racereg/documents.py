"""Invoice and registration receipt documents.

The QR code on each document encodes just the payment reference (order or
registration number) so a bank transfer can be matched on import.
"""

from __future__ import annotations

from io import BytesIO

import qrcode
from PIL import Image
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from . import models
from .csv_io import format_cell
from .settings import settings
from .utils import as_utc


def make_qr_png_bytes(text: str, box_size: int = 10, border: int = 2) -> bytes:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(text)
    qr.make(fit=True)
    img: Image.Image = qr.make_image(fill_color="black", back_color="white").convert("RGB")
    bio = BytesIO()
    img.save(bio, format="PNG")
    return bio.getvalue()


def invoice_context(order: models.Order) -> dict:
    return {
        "seller": {
            "name": settings.SELLER_NAME,
            "address": settings.SELLER_ADDRESS,
            "tax_number": settings.SELLER_TAX_NUMBER,
        },
        "order_number": order.order_number,
        "date": as_utc(order.created_at).date().isoformat(),
        "customer_name": order.shipping_name,
        "customer_email": order.shipping_email,
        "customer_address": order.shipping_address,
        "status": order.status,
        "payment_method": order.payment_method,
        "currency": settings.SHOP_CURRENCY,
        "lines": [
            {
                "name": item.product.name,
                "size": item.size or "",
                "quantity": item.quantity,
                "unit_price": format_cell(item.unit_price),
                "total": format_cell(item.line_total),
            }
            for item in order.items
        ],
        "total": format_cell(order.total_amount),
    }


def _draw_qr(c: canvas.Canvas, reference: str, x: float, y: float, size: float) -> None:
    img = ImageReader(BytesIO(make_qr_png_bytes(reference)))
    c.drawImage(img, x, y, width=size, height=size, preserveAspectRatio=True, mask="auto")


def render_invoice_pdf(order: models.Order) -> bytes:
    ctx = invoice_context(order)
    page_w, page_h = A4
    margin = 20 * mm
    qr_size = 30 * mm

    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    c.setTitle(f"Invoice {ctx['order_number']}")

    y = page_h - margin
    c.setFont("Helvetica-Bold", 16)
    c.drawString(margin, y, f"Invoice {ctx['order_number']}")
    _draw_qr(c, ctx["order_number"], page_w - margin - qr_size, y - qr_size + 5 * mm, qr_size)

    c.setFont("Helvetica", 10)
    y -= 10 * mm
    for line in (ctx["seller"]["name"], ctx["seller"]["address"], ctx["seller"]["tax_number"]):
        if line:
            c.drawString(margin, y, line)
            y -= 5 * mm

    y -= 5 * mm
    c.drawString(margin, y, f"Date: {ctx['date']}")
    y -= 5 * mm
    c.drawString(margin, y, f"Customer: {ctx['customer_name']} <{ctx['customer_email']}>")
    if ctx["customer_address"]:
        y -= 5 * mm
        c.drawString(margin, y, ctx["customer_address"])

    y -= 12 * mm
    c.setFont("Helvetica-Bold", 10)
    c.drawString(margin, y, "Item")
    c.drawRightString(page_w - margin - 50 * mm, y, "Qty")
    c.drawRightString(page_w - margin - 25 * mm, y, "Unit")
    c.drawRightString(page_w - margin, y, "Total")
    c.setFont("Helvetica", 10)
    for line in ctx["lines"]:
        y -= 6 * mm
        if y < margin + 20 * mm:
            c.showPage()
            c.setFont("Helvetica", 10)
            y = page_h - margin
        label = f"{line['name']} ({line['size']})" if line["size"] else line["name"]
        c.drawString(margin, y, label)
        c.drawRightString(page_w - margin - 50 * mm, y, str(line["quantity"]))
        c.drawRightString(page_w - margin - 25 * mm, y, line["unit_price"])
        c.drawRightString(page_w - margin, y, line["total"])

    y -= 10 * mm
    c.setFont("Helvetica-Bold", 12)
    c.drawRightString(page_w - margin, y, f"Total: {ctx['total']} {ctx['currency']}")
    y -= 6 * mm
    c.setFont("Helvetica", 9)
    c.drawString(margin, y, f"Payment: {ctx['payment_method']}, status {ctx['status']}. Reference: {ctx['order_number']}")

    c.save()
    return buf.getvalue()


def render_registration_receipt_pdf(registration: models.Registration) -> bytes:
    page_w, page_h = A4
    margin = 20 * mm
    qr_size = 40 * mm

    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    c.setTitle(f"Registration {registration.registration_number}")

    y = page_h - margin
    c.setFont("Helvetica-Bold", 16)
    c.drawString(margin, y, registration.distance.event.title)
    y -= 8 * mm
    c.setFont("Helvetica", 11)
    c.drawString(margin, y, f"Distance: {registration.distance.name}")
    y -= 6 * mm
    c.drawString(margin, y, f"Participant: {registration.user.full_name}")
    y -= 6 * mm
    price = format_cell(registration.final_price)
    tier = f" ({registration.tier_name})" if registration.tier_name else ""
    c.drawString(margin, y, f"Entry fee: {price} {settings.SHOP_CURRENCY}{tier}")
    y -= 6 * mm
    c.drawString(margin, y, f"Payment status: {registration.payment_status}")

    _draw_qr(c, registration.registration_number, (page_w - qr_size) / 2, y - qr_size - 10 * mm, qr_size)
    c.setFont("Helvetica-Bold", 14)
    c.drawCentredString(page_w / 2, y - qr_size - 16 * mm, registration.registration_number)

    c.save()
    return buf.getvalue()
