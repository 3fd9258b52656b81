# utils/wallet_qr.py
from itsdangerous import URLSafeSerializer, BadData
from flask import current_app

from services.errors import ValidationError

SALT_PAYMENT_QR = "payment-qr-v1"


def _serializer():
    return URLSafeSerializer(current_app.config["SECRET_KEY"], salt=SALT_PAYMENT_QR)


def build_payment_token(qr_id: str) -> str:
    """
    Signed token naming a QR code. Carries no expiry of its own: the
    qr_codes row decides whether the code can still be redeemed.
    """
    return _serializer().dumps({"qr": qr_id})


def verify_payment_token(token: str) -> str:
    """Return the qr_id a payment token names, or raise ValidationError."""
    tok = (token or "").strip()
    if not tok:
        raise ValidationError("token is required")
    try:
        data = _serializer().loads(tok)
    except BadData:
        current_app.logger.warning("[cafeteria] rejected payment token with bad signature or payload")
        raise ValidationError("Invalid payment token.")
    qr_id = data.get("qr") if isinstance(data, dict) else None
    if not qr_id:
        raise ValidationError("Invalid payment token.")
    return str(qr_id)
