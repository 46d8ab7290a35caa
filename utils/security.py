import hashlib
import hmac
import secrets
from typing import Optional


def constant_time_equals(a: str, b: str) -> bool:
    if a is None or b is None:
        return False
    return secrets.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def hmac_sha256_hex(secret: str, message: str) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


# --- Token HMAC simples: "<user_id>.<assinatura>" ---
def make_token(user_id: str, secret: str) -> str:
    return f"{user_id}.{hmac_sha256_hex(secret, user_id)}"


def parse_token(token: str, secret: str) -> Optional[str]:
    user_id, sep, sig = (token or "").rpartition(".")
    if not sep or not user_id or not sig:
        return None
    if constant_time_equals(hmac_sha256_hex(secret, user_id), sig):
        return user_id
    return None
