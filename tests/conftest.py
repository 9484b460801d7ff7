"""Shared fixtures: an initialized escrow program and envelope builders."""

import base64
import struct
from typing import Any, Callable

import base58
import pytest
from solders.keypair import Keypair

from strongbox.account_store import AccountStore, InMemoryTokenLedger
from strongbox.accounts import EscrowRecord
from strongbox.constants import (
    CLAIM_DISCRIMINATOR,
    CLAIM_INSTRUCTION,
    HIDE_DISCRIMINATOR,
    HIDE_INSTRUCTION,
    PROGRAM_ID,
    RECORD_DISCRIMINATOR,
    TOKEN_PROGRAM_ID,
    VAULT_DISCRIMINATOR,
    anchor_discriminator,
)
from strongbox.program import EscrowProgram, InstructionReceipt

CLOCK = 1_700_000_000
STARTING_BALANCE = 10_000 * 10**6


def new_address() -> str:
    return str(Keypair().pubkey())


MINT = new_address()


@pytest.fixture
def accounts() -> AccountStore:
    return AccountStore()


@pytest.fixture
def tokens(accounts: AccountStore) -> InMemoryTokenLedger:
    return InMemoryTokenLedger(accounts, MINT)


@pytest.fixture
def authority() -> str:
    return new_address()


@pytest.fixture
def program(accounts: AccountStore, tokens: InMemoryTokenLedger, authority: str) -> EscrowProgram:
    prog = EscrowProgram(accounts, tokens, clock=lambda: float(CLOCK))
    prog.initialize(authority)
    return prog


@pytest.fixture
def funded_player(tokens: InMemoryTokenLedger) -> Callable[[int], str]:
    """Factory: a fresh player address holding ``balance`` token units."""

    def _make(balance: int = STARTING_BALANCE) -> str:
        player = new_address()
        if balance:
            tokens.mint_to(player, balance)
        return player

    return _make


@pytest.fixture
def player(funded_player: Callable[[int], str]) -> str:
    return funded_player(STARTING_BALANCE)


def _instruction_data(receipt: InstructionReceipt) -> bytes:
    if receipt.instruction == HIDE_INSTRUCTION:
        record = EscrowRecord.from_bytes(receipt.account_data[receipt.accounts[4]])
        return HIDE_DISCRIMINATOR + struct.pack("<Qq", record.amount, record.identifier)
    if receipt.instruction == CLAIM_INSTRUCTION:
        return CLAIM_DISCRIMINATOR
    return anchor_discriminator("global", receipt.instruction)


def envelope_from_receipt(
    receipt: InstructionReceipt,
    *,
    mint: str | None = MINT,
    with_name: bool = False,
    with_account_data: bool = True,
    with_instruction: bool = True,
) -> dict[str, Any]:
    """Build an enhanced-shape webhook payload from a committed instruction."""
    instruction: dict[str, Any] = {
        "programId": receipt.program_id,
        "accounts": list(receipt.accounts),
        "data": base58.b58encode(_instruction_data(receipt)).decode(),
    }
    if with_name:
        instruction["name"] = receipt.instruction

    account_data = []
    for address, data in receipt.account_data.items():
        owned = data[:8] in (RECORD_DISCRIMINATOR, VAULT_DISCRIMINATOR)
        account_data.append({
            "account": address,
            "data": base64.b64encode(data).decode(),
            "owner": receipt.program_id if owned else TOKEN_PROGRAM_ID,
        })

    payload: dict[str, Any] = {
        "signature": receipt.signature,
        "timestamp": receipt.block_time,
        "slot": receipt.slot,
        "fee": 5000,
        "feePayer": receipt.accounts[0],
        "accountKeys": list(receipt.accounts) + [receipt.program_id],
        "instructions": [instruction] if with_instruction else [],
        "accountData": account_data if with_account_data else [],
        "tokenTransfers": [],
    }
    if receipt.instruction == HIDE_INSTRUCTION and mint is not None:
        record = EscrowRecord.from_bytes(receipt.account_data[receipt.accounts[4]])
        payload["tokenTransfers"].append({
            "fromUserAccount": receipt.accounts[0],
            "toUserAccount": receipt.accounts[3],
            "tokenAmount": record.amount / 10**6,
            "mint": mint,
        })
    return payload


@pytest.fixture
def make_envelope() -> Callable[..., dict[str, Any]]:
    return envelope_from_receipt


@pytest.fixture
def program_id() -> str:
    return PROGRAM_ID


@pytest.fixture
def make_address() -> Callable[[], str]:
    return new_address


@pytest.fixture
def mint() -> str:
    return MINT
