# utils/qr.py
from __future__ import annotations

from io import BytesIO

import qrcode


def render_qr_png(data: str, *, size: int = 360) -> BytesIO:
    """PNG bytes of a square QR image encoding data."""
    size = max(240, min(1024, int(size)))

    qr = qrcode.QRCode(box_size=10, border=2)
    qr.add_data(data)
    qr.make(fit=True)
    out = qr.make_image(fill_color="black", back_color="white").convert("RGB")
    out = out.resize((size, size))

    bio = BytesIO()
    out.save(bio, format="PNG", optimize=True)
    bio.seek(0)
    return bio
