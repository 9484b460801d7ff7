"""Deterministic, key-less derived addresses for program accounts."""

from __future__ import annotations

from solders.pubkey import Pubkey

from strongbox.constants import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    I64_MAX,
    I64_MIN,
    RECORD_SEED,
    TOKEN_PROGRAM_ID,
    VAULT_SEED,
    WHITELIST_SEED,
)


def to_pubkey(address: str) -> Pubkey:
    """Parse a base58 address. Raises ValueError when malformed."""
    return Pubkey.from_string(address)


def pubkey_from_bytes(raw: bytes) -> str:
    """Render 32 raw address bytes as a base58 string."""
    if len(raw) != 32:
        raise ValueError(f"address must be 32 bytes, got {len(raw)}")
    return str(Pubkey.from_bytes(raw))


def is_valid_address(address: object) -> bool:
    if not isinstance(address, str) or not address:
        return False
    try:
        Pubkey.from_string(address)
    except ValueError:
        return False
    return True


def identifier_seed(identifier: int) -> bytes:
    """Little-endian i64 encoding used as the record salt."""
    if not I64_MIN <= identifier <= I64_MAX:
        raise ValueError(f"identifier out of i64 range: {identifier}")
    return identifier.to_bytes(8, "little", signed=True)


def derive_vault_address(program_id: str) -> tuple[str, int]:
    """Return ``(address, bump)`` of the singleton vault."""
    pda, bump = Pubkey.find_program_address([VAULT_SEED], to_pubkey(program_id))
    return str(pda), bump


def derive_record_address(program_id: str, player: str, identifier: int) -> tuple[str, int]:
    """Return ``(address, bump)`` of the escrow record for ``(player, identifier)``.

    The same pair always maps to the same address, so a second hide with a
    reused identifier collides with the existing record.
    """
    seeds = [RECORD_SEED, bytes(to_pubkey(player)), identifier_seed(identifier)]
    pda, bump = Pubkey.find_program_address(seeds, to_pubkey(program_id))
    return str(pda), bump


def derive_whitelist_address(program_id: str, mint: str) -> tuple[str, int]:
    """Return ``(address, bump)`` of the whitelist entry for ``mint``."""
    seeds = [WHITELIST_SEED, bytes(to_pubkey(mint))]
    pda, bump = Pubkey.find_program_address(seeds, to_pubkey(program_id))
    return str(pda), bump


def derive_token_account(owner: str, mint: str) -> str:
    """Associated token account of ``owner`` for ``mint``."""
    seeds = [bytes(to_pubkey(owner)), bytes(to_pubkey(TOKEN_PROGRAM_ID)), bytes(to_pubkey(mint))]
    pda, _ = Pubkey.find_program_address(seeds, to_pubkey(ASSOCIATED_TOKEN_PROGRAM_ID))
    return str(pda)
