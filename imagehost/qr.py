import base64
import io

import qrcode
from qrcode.constants import ERROR_CORRECT_H


def qr_png(data: str, box_size: int = 10, border: int = 1) -> bytes:
    qr = qrcode.QRCode(version=None, error_correction=ERROR_CORRECT_H, box_size=box_size, border=border)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, "PNG")
    return buffer.getvalue()


def qr_data_url(data: str) -> str:
    encoded = base64.b64encode(qr_png(data)).decode("ascii")
    return f"data:image/png;base64,{encoded}"
