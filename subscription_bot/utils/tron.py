"""Адреса TRON: hex (41...) из ответов TronGrid -> base58check (T...)"""
import base58

ADDRESS_PREFIX = 0x41


def normalize_address(address: str) -> str:
    """Приводит адрес к base58 виду, в котором его показывают пользователю"""
    if address.startswith("T"):
        return address

    raw = bytes.fromhex(address.removeprefix("0x"))
    if len(raw) == 20:
        raw = bytes([ADDRESS_PREFIX]) + raw
    if len(raw) != 21 or raw[0] != ADDRESS_PREFIX:
        raise ValueError(f"Некорректный hex адрес TRON: {address}")
    return base58.b58encode_check(raw).decode()
