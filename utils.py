import re
import secrets
import string
from datetime import datetime, timezone


KENYAN_MSISDN = re.compile(r"^254[17]\d{8}$")
REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits


def utcnow():
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_phone(phone):
    """
    Convert common Kenyan formats (07XXXXXXXX, +2547XXXXXXXX, 7XXXXXXXX)
    to 2547XXXXXXXX. Returns None when the result is not a valid MSISDN.
    """
    if not phone:
        return None
    cleaned = re.sub(r"[^0-9]", "", str(phone))
    if cleaned.startswith("0"):
        cleaned = cleaned[1:]
    if not cleaned.startswith("254"):
        cleaned = "254" + cleaned
    if not KENYAN_MSISDN.match(cleaned):
        return None
    return cleaned


def generate_referral_code(length=8):
    return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(length))
