from __future__ import annotations

import secrets
import struct
import time

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
TASK_ID_PREFIX = "TID-"
RAW_BYTES = 16
ENCODED_LENGTH = 22


def base58_22(raw: bytes) -> str:
    if not isinstance(raw, (bytes, bytearray)) or len(raw) != RAW_BYTES:
        raise ValueError("task id encoder requires exactly 16 bytes")
    n = int.from_bytes(raw, "big")
    chars: list[str] = []
    while n > 0:
        n, rem = divmod(n, 58)
        chars.append(BASE58_ALPHABET[rem])
    encoded = "".join(reversed(chars))
    # Left-pad so ids sort by their leading timestamp bytes.
    return encoded.rjust(ENCODED_LENGTH, BASE58_ALPHABET[0])


def time_ordered_bytes(ts_ms: int | None = None) -> bytes:
    if ts_ms is None:
        ts_ms = int(time.time() * 1000)
    raw = bytearray(struct.pack(">Q", ts_ms)[2:] + secrets.token_bytes(10))
    # UUIDv7 version and variant bits.
    raw[6] = (raw[6] & 0x0F) | 0x70
    raw[8] = (raw[8] & 0x3F) | 0x80
    return bytes(raw)


def is_task_id(value: str) -> bool:
    if not isinstance(value, str) or not value.startswith(TASK_ID_PREFIX):
        return False
    body = value[len(TASK_ID_PREFIX) :]
    return len(body) == ENCODED_LENGTH and all(ch in BASE58_ALPHABET for ch in body)


class TaskIdGenerator:
    """Issues `TID-<base58>` ids, never repeating one within its lifetime."""

    def __init__(self) -> None:
        self._issued: set[str] = set()

    def next_id(self) -> str:
        while True:
            candidate = TASK_ID_PREFIX + base58_22(time_ordered_bytes())
            if candidate not in self._issued:
                self._issued.add(candidate)
                return candidate

    def __len__(self) -> int:
        return len(self._issued)
