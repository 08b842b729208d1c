import base64
import io

import qrcode
from qrcode.constants import ERROR_CORRECT_H


def render_qr(data: str, box_size: int = 10, border: int = 2) -> str:
    """PNG QR code for `data`, returned as a data URL."""
    qr = qrcode.QRCode(
        error_correction=ERROR_CORRECT_H,
        box_size=box_size,
        border=border,
    )
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image()
    buf = io.BytesIO()
    img.save(buf)
    return "data:image/png;base64," + base64.b64encode(
        buf.getvalue()).decode()
