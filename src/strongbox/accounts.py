"""On-ledger account types for the treasure escrow program.

Pure data model — no I/O. Amounts are integer smallest-unit token values
(6 decimals). Byte layouts follow the Anchor convention: an 8-byte type
tag followed by the fields in declaration order, little-endian.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Any

from strongbox.addresses import pubkey_from_bytes, to_pubkey
from strongbox.constants import (
    RECORD_DISCRIMINATOR,
    VAULT_DISCRIMINATOR,
    WHITELIST_DISCRIMINATOR,
    Tier,
)

# authority, total_hidden, total_claimed, bump
_VAULT_LAYOUT = struct.Struct("<32sQQB")
# player, amount, identifier, claimed, tier, bump
_RECORD_LAYOUT = struct.Struct("<32sQqBBB")
# token_mint, enabled, bump
_WHITELIST_LAYOUT = struct.Struct("<32sBB")

VAULT_LEN = 8 + _VAULT_LAYOUT.size  # 57
RECORD_LEN = 8 + _RECORD_LAYOUT.size  # 59
WHITELIST_LEN = 8 + _WHITELIST_LAYOUT.size  # 42


class AccountLayoutError(ValueError):
    """Raised when stored account bytes do not match the expected layout."""


# ---------------------------------------------------------------------------
# Vault
# ---------------------------------------------------------------------------


@dataclass
class Vault:
    """Singleton escrow vault. Totals only ever grow."""

    authority: str
    total_hidden: int = 0
    total_claimed: int = 0
    bump: int = 0

    def to_bytes(self) -> bytes:
        return VAULT_DISCRIMINATOR + _VAULT_LAYOUT.pack(
            bytes(to_pubkey(self.authority)),
            self.total_hidden,
            self.total_claimed,
            self.bump,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> Vault:
        if len(data) < VAULT_LEN or data[:8] != VAULT_DISCRIMINATOR:
            raise AccountLayoutError("not a vault account")
        authority, hidden, claimed, bump = _VAULT_LAYOUT.unpack_from(data, 8)
        return cls(
            authority=pubkey_from_bytes(authority),
            total_hidden=hidden,
            total_claimed=claimed,
            bump=bump,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "authority": self.authority,
            "total_hidden": self.total_hidden,
            "total_claimed": self.total_claimed,
            "bump": self.bump,
        }


# ---------------------------------------------------------------------------
# EscrowRecord
# ---------------------------------------------------------------------------


@dataclass
class EscrowRecord:
    """Per-deposit record. ``claimed`` is the only field mutated after creation."""

    player: str
    amount: int
    identifier: int  # unix seconds at hide time; also the address salt
    claimed: bool = False
    tier: int = Tier.COMMON
    bump: int = 0

    def to_bytes(self) -> bytes:
        return RECORD_DISCRIMINATOR + _RECORD_LAYOUT.pack(
            bytes(to_pubkey(self.player)),
            self.amount,
            self.identifier,
            1 if self.claimed else 0,
            int(self.tier),
            self.bump,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> EscrowRecord:
        """Full read of a live record, including the reserved tier byte."""
        if len(data) < RECORD_LEN or data[:8] != RECORD_DISCRIMINATOR:
            raise AccountLayoutError("not an escrow record account")
        player, amount, identifier, claimed, tier, bump = _RECORD_LAYOUT.unpack_from(data, 8)
        return cls(
            player=pubkey_from_bytes(player),
            amount=amount,
            identifier=identifier,
            claimed=bool(claimed),
            tier=tier,
            bump=bump,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "player": self.player,
            "amount": self.amount,
            "identifier": self.identifier,
            "claimed": self.claimed,
            "tier": int(self.tier),
            "bump": self.bump,
        }


# ---------------------------------------------------------------------------
# TokenWhitelist
# ---------------------------------------------------------------------------


@dataclass
class TokenWhitelist:
    """Admin-approved token mint that may be hidden as treasure."""

    token_mint: str
    enabled: bool = True
    bump: int = 0

    def to_bytes(self) -> bytes:
        return WHITELIST_DISCRIMINATOR + _WHITELIST_LAYOUT.pack(
            bytes(to_pubkey(self.token_mint)),
            1 if self.enabled else 0,
            self.bump,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> TokenWhitelist:
        if len(data) < WHITELIST_LEN or data[:8] != WHITELIST_DISCRIMINATOR:
            raise AccountLayoutError("not a token whitelist account")
        mint, enabled, bump = _WHITELIST_LAYOUT.unpack_from(data, 8)
        return cls(token_mint=pubkey_from_bytes(mint), enabled=bool(enabled), bump=bump)

    def to_dict(self) -> dict[str, Any]:
        return {"token_mint": self.token_mint, "enabled": self.enabled, "bump": self.bump}
