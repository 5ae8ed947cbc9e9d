"""
條碼服務：注單條碼的產生與驗證

條碼 = HMAC-SHA256(secret, "{round_id}_{slip_id 前 8 碼大寫}") 的前 64 bits，
轉成大寫 base-36，左補 0 到 13 碼。

純計算邏輯，不碰資料庫
"""
import hashlib
import hmac
import re

BARCODE_LENGTH = 13
BARCODE_RE = re.compile(r"^[0-9A-Z]{13}$")
ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def slip_prefix(slip_id: str) -> str:
    return slip_id[:8].upper()


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(ALPHABET[remainder])
    return "".join(reversed(digits))


def generate_barcode(round_id: str, slip_id: str, secret: str) -> str:
    """
    產生 13 碼條碼

    2^64 < 36^13，所以 64 bits 一定放得進 13 碼
    """
    message = f"{round_id}_{slip_prefix(slip_id)}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()
    value = int.from_bytes(digest[:8], "big")
    return _base36(value).rjust(BARCODE_LENGTH, "0")


def is_barcode(identifier: str) -> bool:
    return bool(identifier) and bool(BARCODE_RE.match(identifier))


def verify_barcode(barcode: str, round_id: str, slip_id: str, secret: str) -> bool:
    """重新計算後以 constant-time 比較"""
    if not is_barcode(barcode):
        return False
    expected = generate_barcode(round_id, slip_id, secret)
    return hmac.compare_digest(expected, barcode)
