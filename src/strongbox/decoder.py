"""Escrow record decoder for account bytes carried inside delivered events.

Reads the fixed record layout directly, without any ledger client
deserializer. The layout is an external contract:

======  ==========  =====================================
Bytes   Field       Notes
======  ==========  =====================================
0-7     type tag    must equal ``RECORD_DISCRIMINATOR``
8-39    player      raw 32-byte address
40-47   amount      u64 little-endian
48-55   identifier  i64 little-endian
56      claimed     0 or 1
57      tier        reserved, never read
58      bump        never read
======  ==========  =====================================
"""

from __future__ import annotations

import base64
import binascii
import struct
from dataclasses import dataclass
from typing import Any

import base58

from strongbox.addresses import pubkey_from_bytes
from strongbox.constants import RECORD_DISCRIMINATOR

MIN_RECORD_LEN = 58

_AMOUNT_IDENTIFIER = struct.Struct("<Qq")
_CLAIMED_OFFSET = 56


class DecodeError(ValueError):
    """Raised when account bytes cannot be decoded as an escrow record."""


@dataclass(frozen=True)
class DecodedRecord:
    player: str
    amount: int
    identifier: int
    claimed: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "player": self.player,
            "amount": self.amount,
            "identifier": self.identifier,
            "claimed": self.claimed,
        }


def decode_escrow_record(raw: bytes) -> DecodedRecord:
    """Decode an escrow record. Fails closed with ``DecodeError``."""
    if len(raw) < MIN_RECORD_LEN:
        raise DecodeError(
            f"escrow record needs at least {MIN_RECORD_LEN} bytes, got {len(raw)}"
        )
    if bytes(raw[:8]) != RECORD_DISCRIMINATOR:
        raise DecodeError("account type tag does not match escrow record")

    player = pubkey_from_bytes(bytes(raw[8:40]))
    amount, identifier = _AMOUNT_IDENTIFIER.unpack_from(raw, 40)
    flag = raw[_CLAIMED_OFFSET]
    if flag not in (0, 1):
        raise DecodeError(f"claimed flag must be 0 or 1, got {flag}")
    # Byte 57 (tier) and 58 (bump) are skipped on purpose.
    return DecodedRecord(player=player, amount=amount, identifier=identifier, claimed=bool(flag))


def decode_account_data(data: Any) -> bytes:
    """Normalize event account data to bytes.

    Accepts raw bytes, a base64 string, or an RPC-style ``[text, encoding]``
    pair where encoding is ``base64`` or ``base58``.
    """
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)

    encoding = "base64"
    if isinstance(data, (list, tuple)):
        if len(data) != 2 or not isinstance(data[0], str) or not isinstance(data[1], str):
            raise DecodeError("account data pair must be [text, encoding]")
        data, encoding = data[0], data[1]
    if not isinstance(data, str):
        raise DecodeError(f"unsupported account data type: {type(data).__name__}")

    try:
        if encoding == "base64":
            return base64.b64decode(data, validate=True)
        if encoding == "base58":
            return base58.b58decode(data)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"invalid {encoding} account data: {exc}") from exc
    raise DecodeError(f"unsupported account data encoding: {encoding}")
