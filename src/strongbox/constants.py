"""Constants for the treasure escrow program and its sync pipeline."""

import hashlib
from enum import Enum, IntEnum


PROGRAM_ID = "7fcqEt6ieMEgPNQUbVyxGCpVXFPfRsj7xxHgdwqNB1kh"
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"

TOKEN_DECIMALS = 6
MIN_DEPOSIT = 100_000_000  # 100 tokens at 6 decimals

U64_MAX = 2**64 - 1
I64_MIN = -(2**63)
I64_MAX = 2**63 - 1

VAULT_SEED = b"vault"
RECORD_SEED = b"treasure"
WHITELIST_SEED = b"whitelist"

DEPOSITS_COLLECTION = "hidden-treasures"
PENDING_CLAIMS_COLLECTION = "pending-claims"


def anchor_discriminator(namespace: str, name: str) -> bytes:
    """First 8 bytes of ``sha256("{namespace}:{name}")``."""
    return hashlib.sha256(f"{namespace}:{name}".encode()).digest()[:8]


VAULT_DISCRIMINATOR = anchor_discriminator("account", "TreasureVault")
RECORD_DISCRIMINATOR = anchor_discriminator("account", "TreasureRecord")
WHITELIST_DISCRIMINATOR = anchor_discriminator("account", "TokenWhitelist")

HIDE_INSTRUCTION = "hide_treasure"
CLAIM_INSTRUCTION = "claim_treasure"
WHITELIST_INSTRUCTION = "whitelist_token"
HIDE_DISCRIMINATOR = anchor_discriminator("global", HIDE_INSTRUCTION)
CLAIM_DISCRIMINATOR = anchor_discriminator("global", CLAIM_INSTRUCTION)


class DepositStatus(str, Enum):
    """Lifecycle of a cached deposit document. Only moves forward."""

    ACTIVE = "active"
    CLAIMED = "claimed"
    EXPIRED = "expired"


class Tier(IntEnum):
    """Reward tier recorded on-ledger at hide time."""

    COMMON = 1
    RARE = 2
    EPIC = 3
    LEGENDARY = 4


def calculate_tier(amount: int) -> Tier:
    """Map a deposit amount (smallest units) to its tier."""
    tokens = amount // 10**TOKEN_DECIMALS
    if tokens >= 100_000:
        return Tier.LEGENDARY
    if tokens >= 10_000:
        return Tier.EPIC
    if tokens >= 1_000:
        return Tier.RARE
    return Tier.COMMON
