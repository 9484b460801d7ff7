"""Relevance filter and event extraction for escrow program transactions.

Turns a ``TransactionEnvelope`` into a normalized ``DepositEvent`` (hide)
or ``ClaimEvent`` (claim), or ``None`` when the transaction is not ours or
the payload lacks what is needed to write a complete document.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from strongbox.addresses import derive_vault_address
from strongbox.constants import (
    CLAIM_DISCRIMINATOR,
    CLAIM_INSTRUCTION,
    HIDE_DISCRIMINATOR,
    HIDE_INSTRUCTION,
    I64_MAX,
    RECORD_DISCRIMINATOR,
)
from strongbox.decoder import DecodedRecord, decode_escrow_record
from strongbox.envelope import AccountState, InstructionInfo, TransactionEnvelope

logger = logging.getLogger(__name__)

# Account slots in the instruction account lists.
_HIDE_PLAYER_SLOT = 0
_HIDE_RECORD_SLOT = 4
_CLAIM_PLAYER_SLOT = 0
_CLAIM_RECORD_SLOT = 1

_EVENT_TYPES = {
    "HIDE_TREASURE": HIDE_INSTRUCTION,
    "CLAIM_TREASURE": CLAIM_INSTRUCTION,
}
_LOG_MARKERS = {
    "Instruction: HideTreasure": HIDE_INSTRUCTION,
    "Instruction: ClaimTreasure": CLAIM_INSTRUCTION,
}


class InstructionKind(str, Enum):
    HIDE = HIDE_INSTRUCTION
    CLAIM = CLAIM_INSTRUCTION


@dataclass(frozen=True)
class DepositEvent:
    """A confirmed hide, ready to be mirrored into the store."""

    signature: str
    wallet_address: str
    amount: int
    token_mint: str | None
    record_address: str
    block_time: int | None
    slot: int | None
    fee: int | None
    identifier: int
    program_id: str


@dataclass(frozen=True)
class ClaimEvent:
    """A confirmed claim. ``signature`` is the claim's own transaction."""

    signature: str
    record_address: str
    claimed_by: str
    block_time: int | None
    slot: int | None
    fee: int | None


# ---------------------------------------------------------------------------
# Filter and classification
# ---------------------------------------------------------------------------


def is_relevant(envelope: TransactionEnvelope, program_id: str) -> bool:
    return program_id in envelope.touched_accounts()


def _normalize_name(name: str) -> str:
    return name.replace("_", "").lower()


def _classify_instruction(ix: InstructionInfo) -> InstructionKind | None:
    if ix.name:
        normalized = _normalize_name(ix.name)
        for kind in InstructionKind:
            if normalized == _normalize_name(kind.value):
                return kind
    prefix = ix.data[:8]
    if prefix == HIDE_DISCRIMINATOR:
        return InstructionKind.HIDE
    if prefix == CLAIM_DISCRIMINATOR:
        return InstructionKind.CLAIM
    return None


def classify(
    envelope: TransactionEnvelope, program_id: str,
) -> tuple[InstructionKind, InstructionInfo | None] | None:
    """Decide hide vs. claim.

    Instruction metadata wins; program events and log lines are consulted
    only when no program instruction could be classified.
    """
    for ix in envelope.instructions:
        if ix.program_id != program_id:
            continue
        kind = _classify_instruction(ix)
        if kind is not None:
            return kind, ix

    for event in envelope.events:
        if event.program_id not in (None, program_id):
            continue
        name = _EVENT_TYPES.get(event.type.upper())
        if name is not None:
            return InstructionKind(name), None

    for line in envelope.log_messages:
        for marker, name in _LOG_MARKERS.items():
            if marker in line:
                return InstructionKind(name), None
    return None


def _slot(ix: InstructionInfo | None, index: int) -> str | None:
    if ix is None or len(ix.accounts) <= index:
        return None
    return ix.accounts[index]


def _find_record_state(
    envelope: TransactionEnvelope, program_id: str, address: str | None,
) -> AccountState | None:
    if address is not None:
        return envelope.account_state(address)
    for state in envelope.account_states:
        if state.data is None or state.data[:8] != RECORD_DISCRIMINATOR:
            continue
        if state.owner not in (None, program_id):
            continue
        return state
    return None


def _token_mint(envelope: TransactionEnvelope, wallet: str, vault: str) -> str | None:
    for transfer in envelope.token_transfers:
        if transfer.mint and (transfer.to_user == vault or transfer.from_user == wallet):
            return transfer.mint
    return None


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def _extract_hide(
    envelope: TransactionEnvelope,
    ix: InstructionInfo | None,
    program_id: str,
    default_mint: str | None,
) -> DepositEvent | None:
    state = _find_record_state(envelope, program_id, _slot(ix, _HIDE_RECORD_SLOT))
    if state is None:
        logger.warning(
            "Hide transaction %s carries no escrow record account data; dropping.",
            envelope.signature,
            extra={"signature": envelope.signature},
        )
        return None

    record: DecodedRecord = decode_escrow_record(state.data or b"")
    if record.amount > I64_MAX:
        # the deposit cache stores amounts as signed 64-bit integers
        logger.error(
            "Hide transaction %s: amount %d exceeds the storable range; dropping.",
            envelope.signature, record.amount,
            extra={"signature": envelope.signature},
        )
        return None
    signer = _slot(ix, _HIDE_PLAYER_SLOT)
    if signer is not None and signer != record.player:
        logger.warning(
            "Hide transaction %s: signer %s differs from record player %s.",
            envelope.signature, signer, record.player,
            extra={"signature": envelope.signature},
        )

    vault, _ = derive_vault_address(program_id)
    return DepositEvent(
        signature=envelope.signature,
        wallet_address=record.player,
        amount=record.amount,
        token_mint=_token_mint(envelope, record.player, vault) or default_mint,
        record_address=state.address,
        block_time=envelope.block_time,
        slot=envelope.slot,
        fee=envelope.fee,
        identifier=record.identifier,
        program_id=program_id,
    )


def _extract_claim(
    envelope: TransactionEnvelope, ix: InstructionInfo | None, program_id: str,
) -> ClaimEvent | None:
    record_address = _slot(ix, _CLAIM_RECORD_SLOT)
    claimed_by = _slot(ix, _CLAIM_PLAYER_SLOT)

    if record_address is None:
        state = _find_record_state(envelope, program_id, None)
        if state is not None:
            record_address = state.address
            claimed_by = claimed_by or decode_escrow_record(state.data or b"").player

    claimed_by = claimed_by or envelope.fee_payer
    if record_address is None or claimed_by is None:
        logger.warning(
            "Claim transaction %s does not identify its escrow record; dropping.",
            envelope.signature,
            extra={"signature": envelope.signature},
        )
        return None

    return ClaimEvent(
        signature=envelope.signature,
        record_address=record_address,
        claimed_by=claimed_by,
        block_time=envelope.block_time,
        slot=envelope.slot,
        fee=envelope.fee,
    )


def extract_event(
    envelope: TransactionEnvelope,
    program_id: str,
    token_mint: str | None = None,
) -> DepositEvent | ClaimEvent | None:
    """Build the normalized event for one envelope.

    Returns ``None`` for irrelevant or unclassifiable transactions and for
    hides whose record account is missing. Raises ``DecodeError`` if the
    record bytes are present but malformed.
    """
    if not is_relevant(envelope, program_id):
        logger.debug("Skipping %s: program not touched.", envelope.signature)
        return None

    classified = classify(envelope, program_id)
    if classified is None:
        logger.info(
            "Skipping %s: no hide or claim instruction found.",
            envelope.signature,
            extra={"signature": envelope.signature},
        )
        return None

    kind, ix = classified
    if kind is InstructionKind.HIDE:
        return _extract_hide(envelope, ix, program_id, token_mint)
    return _extract_claim(envelope, ix, program_id)
