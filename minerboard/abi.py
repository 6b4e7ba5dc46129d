"""Minimal ABI encoding helpers for the leaderboard contract.

Only the handful of shapes the contract exposes are supported: single-address
uint256 views, zero-argument uint256 views, an indexed-address event and the
``MinerInfo[]`` tuple array returned by ``getLeaderboard()``.
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Tuple

from Crypto.Hash import keccak

WORD_HEX = 64


@lru_cache(maxsize=64)
def keccak_hex(text: str) -> str:
    h = keccak.new(digest_bits=256)
    h.update(text.encode("utf-8"))
    return h.hexdigest()


def function_selector(signature: str) -> str:
    """Return the ``0x``-prefixed 4-byte selector for ``signature``."""
    return "0x" + keccak_hex(signature)[:8]


def event_topic(signature: str) -> str:
    """Return topic0 for an event ``signature``."""
    return "0x" + keccak_hex(signature)


def normalize_address(addr: str) -> str:
    a = str(addr).strip().lower()
    if not a.startswith("0x") or len(a) != 42:
        raise ValueError(f"invalid address: {addr}")
    try:
        int(a[2:], 16)
    except ValueError as exc:
        raise ValueError(f"invalid address: {addr}") from exc
    return a


def pad32(hex_str: str) -> str:
    return hex_str.rjust(WORD_HEX, "0")


def encode_address(address: str) -> str:
    return pad32(normalize_address(address)[2:])


def encode_call(signature: str, *addresses: str) -> str:
    """Build ``eth_call`` data for a view taking only address arguments."""
    return function_selector(signature) + "".join(encode_address(a) for a in addresses)


def topic_to_address(topic: str) -> str:
    if not isinstance(topic, str) or not topic.startswith("0x") or len(topic) != 66:
        raise ValueError(f"unexpected topic format: {topic}")
    return "0x" + topic[-40:].lower()


def _strip(data_hex: str) -> str:
    if not isinstance(data_hex, str) or not data_hex.startswith("0x"):
        raise ValueError("data must be 0x-prefixed")
    return data_hex[2:]


def decode_words(data_hex: str) -> List[int]:
    body = _strip(data_hex)
    if len(body) % WORD_HEX:
        raise ValueError(f"data length {len(body)} is not a multiple of 32 bytes")
    return [int(body[i : i + WORD_HEX], 16) for i in range(0, len(body), WORD_HEX)]


def decode_uint256(data_hex: str) -> int:
    """Decode the first 32-byte word of ``data_hex`` as an unsigned integer."""
    body = _strip(data_hex)
    if len(body) < WORD_HEX:
        raise ValueError(f"data too short: need {WORD_HEX} hex chars, got {len(body)}")
    return int(body[:WORD_HEX], 16)


def decode_address_uint_tuples(data_hex: str) -> List[Tuple[str, int]]:
    """Decode an ABI ``(address,uint256)[]`` return value."""
    words = decode_words(data_hex)
    if not words:
        return []
    offset = words[0] // 32
    if offset >= len(words):
        raise ValueError("array offset out of range")
    length = words[offset]
    start = offset + 1
    if start + 2 * length > len(words):
        raise ValueError("array length exceeds payload")
    out: List[Tuple[str, int]] = []
    for i in range(length):
        raw_addr = words[start + 2 * i]
        value = words[start + 2 * i + 1]
        out.append(("0x" + format(raw_addr, "040x")[-40:], value))
    return out


PLAYER_JOINED_EVENT = "InitialFacilityPurchased(address)"
PLAYER_HASHRATE_FN = "playerHashrate(address)"
MINERS_FN = "miners(address)"
TOTAL_HASHRATE_FN = "totalHashrate()"
GET_LEADERBOARD_FN = "getLeaderboard()"

__all__ = [
    "function_selector",
    "event_topic",
    "normalize_address",
    "encode_address",
    "encode_call",
    "topic_to_address",
    "decode_words",
    "decode_uint256",
    "decode_address_uint_tuples",
    "PLAYER_JOINED_EVENT",
    "PLAYER_HASHRATE_FN",
    "MINERS_FN",
    "TOTAL_HASHRATE_FN",
    "GET_LEADERBOARD_FN",
]
