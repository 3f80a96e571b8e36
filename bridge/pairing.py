"""
Pairing artifact rendering.

Turns the raw pairing token emitted by the protocol layer into a
scannable PNG, returned as a data URL so it can travel in JSON.
"""

import base64
import io

import qrcode


def render_pairing_code(token: str) -> str:
    """Render token as a QR code PNG data URL."""
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=6,
        border=4,
    )
    qr.add_data(token)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    encoded = base64.b64encode(buf.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"
