"""
QR rendering for authenticator enrolment.
"""

import base64
from io import BytesIO

import qrcode


def render_data_url(data: str, box_size: int = 6, border: int = 2) -> str:
    """Render `data` as a PNG QR code and return it as a data: URL."""
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(data)
    qr.make(fit=True)

    image = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"
