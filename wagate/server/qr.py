"""Render a pairing artifact as a PNG QR image."""

import io

import qrcode


def render_qr_png(text: str, box_size: int = 8, border: int = 2) -> bytes:
    qr = qrcode.QRCode(version=None, box_size=box_size, border=border)
    qr.add_data(text)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()
