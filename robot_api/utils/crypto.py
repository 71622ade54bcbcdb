import hashlib
import hmac
import secrets

KEY_PREFIX = "rs_"


def hash_token(s: str) -> str:
    return hashlib.sha256(s.encode()).hexdigest()


def generate_api_key() -> str:
    return KEY_PREFIX + secrets.token_hex(24)


def sign_payload(body: bytes, secret: str) -> str:
    """HMAC-SHA256 hex digest of the raw payload bytes"""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, secret: str, signature: str) -> bool:
    if not signature:
        return False
    expected = sign_payload(body, secret)
    return hmac.compare_digest(expected, signature.strip().lower())
