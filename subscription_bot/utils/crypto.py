import hashlib
import hmac
from typing import Union


def hmac_sha512_hex(secret: str, payload: bytes) -> str:
    """HMAC-SHA512 от сырых байт тела запроса в hex"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha512).hexdigest()


def verify_hmac_signature(secret: str, payload: Union[bytes, str], signature: str | None) -> bool:
    """
    Проверяет подпись webhook с использованием защищенного сравнения

    Args:
        secret: общий секрет провайдера (IPN secret)
        payload: тело запроса ровно в том виде, в каком оно пришло
        signature: подпись из заголовка

    Returns:
        True если подпись верна
    """
    if not secret or not signature:
        return False
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    expected = hmac_sha512_hex(secret, payload)
    return hmac.compare_digest(expected, signature.strip().lower())
