"""Entry and exit QR codes.

Payloads are compact JSON objects with exactly one key:

- entry: ``{"registrationId": "<id>"}``
- exit: ``{"exitQrToken": "<token>"}``
"""

import io
import json

import qrcode
from qrcode.constants import ERROR_CORRECT_M


def entry_payload(registration_id: str) -> str:
    return json.dumps({"registrationId": registration_id}, separators=(",", ":"))


def exit_payload(exit_qr_token: str) -> str:
    return json.dumps({"exitQrToken": exit_qr_token}, separators=(",", ":"))


def render_png(data: str, box_size: int = 10, border: int = 4) -> bytes:
    """Render ``data`` as a PNG QR code."""
    qr = qrcode.QRCode(
        version=None,
        error_correction=ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()
