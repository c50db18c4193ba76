import base64

from cryptography.fernet import Fernet, InvalidToken

from novapulse.core.config import settings


_fernet: Fernet | None = None


def _load_key() -> bytes:
    key_value = settings.WEBHOOK_ENCRYPTION_KEY
    if not key_value:
        raise ValueError("WEBHOOK_ENCRYPTION_KEY is not set")
    key_bytes = key_value.encode("utf-8")
    if len(key_bytes) == 32:
        key_bytes = base64.urlsafe_b64encode(key_bytes)
    return key_bytes


def _get_fernet() -> Fernet:
    global _fernet
    if _fernet is None:
        try:
            _fernet = Fernet(_load_key())
        except (TypeError, ValueError) as exc:
            raise ValueError("Invalid WEBHOOK_ENCRYPTION_KEY") from exc
    return _fernet


def reset_cipher() -> None:
    global _fernet
    _fernet = None


def encrypt_secret(secret: str) -> str:
    return _get_fernet().encrypt(secret.encode("utf-8")).decode("utf-8")


def decrypt_secret(token: str) -> str:
    try:
        raw = _get_fernet().decrypt(token.encode("utf-8"))
    except InvalidToken as exc:
        raise ValueError("Invalid encrypted secret") from exc
    return raw.decode("utf-8")
