"""Treasure escrow program: initialize, hide, claim, update_vault, whitelist_token.

Each instruction runs against a fresh ``Transaction`` and commits all of
its account writes at once. Any error raised before the commit leaves
every account byte-for-byte unchanged. A commit that loses a race with a
concurrent instruction is re-executed against the new state, which is how
the ledger serializes conflicting writes to the same account.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

import base58

from strongbox.account_store import (
    AccountStore,
    ConcurrentModification,
    InsufficientFundsError,
    TokenLedger,
    Transaction,
)
from strongbox.accounts import EscrowRecord, TokenWhitelist, Vault
from strongbox.addresses import (
    derive_record_address,
    derive_vault_address,
    derive_whitelist_address,
    identifier_seed,
)
from strongbox.config import StrongboxConfig
from strongbox.constants import (
    CLAIM_INSTRUCTION,
    HIDE_INSTRUCTION,
    MIN_DEPOSIT,
    PROGRAM_ID,
    RECORD_DISCRIMINATOR,
    SYSTEM_PROGRAM_ID,
    TOKEN_DECIMALS,
    TOKEN_PROGRAM_ID,
    U64_MAX,
    WHITELIST_DISCRIMINATOR,
    WHITELIST_INSTRUCTION,
    calculate_tier,
)

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

_MAX_COMMIT_ATTEMPTS = 64


# ---------------------------------------------------------------------------
# Error codes
# ---------------------------------------------------------------------------


class EscrowError(Exception):
    """Base class for program errors. Every one aborts the whole instruction."""

    code: int = 6000
    default_message: str = "Escrow program error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class InsufficientDeposit(EscrowError):
    code = 6000
    default_message = "Treasure amount is too low (minimum 100 tokens)"


class AlreadyClaimed(EscrowError):
    code = 6001
    default_message = "Treasure has already been claimed"


class Unauthorized(EscrowError):
    code = 6002
    default_message = "You are not authorized to perform this action"


class InsufficientBalance(EscrowError):
    code = 6003
    default_message = "Token balance is too low for this deposit"


class AlreadyInitialized(EscrowError):
    code = 6004
    default_message = "Vault has already been initialized"


class RecordAlreadyExists(EscrowError):
    code = 6005
    default_message = "A treasure record already exists for this player and identifier"


class NotInitialized(EscrowError):
    code = 6006
    default_message = "Vault has not been initialized"


class RecordNotFound(EscrowError):
    code = 6007
    default_message = "Treasure record not found"


class ArithmeticOverflow(EscrowError):
    code = 6008
    default_message = "Arithmetic overflow occurred"


class TokenAlreadyWhitelisted(EscrowError):
    code = 6009
    default_message = "Token mint is already whitelisted"


# ---------------------------------------------------------------------------
# Receipts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InstructionReceipt:
    """Outcome of a committed instruction.

    ``accounts`` follows the instruction's account ordering; ``account_data``
    holds the post-commit bytes of every account the instruction wrote.
    """

    signature: str
    instruction: str
    program_id: str
    accounts: tuple[str, ...]
    account_data: dict[str, bytes] = field(default_factory=dict)
    slot: int = 0
    block_time: int = 0


def _check_u64(name: str, value: int) -> None:
    if not 0 <= value <= U64_MAX:
        raise ValueError(f"{name} out of u64 range: {value}")


def _format_tokens(amount: int) -> str:
    whole, frac = divmod(amount, 10**TOKEN_DECIMALS)
    if not frac:
        return f"{whole:,}"
    return f"{whole:,}." + f"{frac:0{TOKEN_DECIMALS}d}".rstrip("0")


# ---------------------------------------------------------------------------
# Program
# ---------------------------------------------------------------------------


class EscrowProgram:
    """Instruction handlers over a shared ``AccountStore``."""

    def __init__(
        self,
        accounts: AccountStore,
        tokens: TokenLedger,
        program_id: str = PROGRAM_ID,
        min_deposit: int = MIN_DEPOSIT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._accounts = accounts
        self._tokens = tokens
        self.program_id = program_id
        self.min_deposit = min_deposit
        self._clock = clock
        self.vault_address, self._vault_bump = derive_vault_address(program_id)
        self._slot = 0
        self._slot_lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        accounts: AccountStore,
        tokens: TokenLedger,
        config: StrongboxConfig,
        clock: Callable[[], float] = time.time,
    ) -> EscrowProgram:
        return cls(
            accounts,
            tokens,
            program_id=config.program_id,
            min_deposit=config.min_deposit,
            clock=clock,
        )

    # -- plumbing -------------------------------------------------------------

    def _execute(self, body: Callable[[Transaction], _T]) -> tuple[_T, dict[str, bytes]]:
        """Run ``body`` in a transaction, re-running it if the commit races."""
        for attempt in range(_MAX_COMMIT_ATTEMPTS):
            tx = self._accounts.begin()
            result = body(tx)
            try:
                written = tx.commit()
            except ConcurrentModification as exc:
                logger.info(
                    "Commit conflict on %s (attempt %d/%d), re-executing.",
                    exc.address, attempt + 1, _MAX_COMMIT_ATTEMPTS,
                )
                continue
            return result, written
        raise ConcurrentModification(self.vault_address)

    def _receipt(
        self, instruction: str, accounts: list[str], written: dict[str, bytes],
    ) -> InstructionReceipt:
        with self._slot_lock:
            self._slot += 1
            slot = self._slot
        block_time = int(self._clock())
        digest = hashlib.sha512(
            f"{self.program_id}:{instruction}:{slot}:{','.join(accounts)}".encode()
        ).digest()
        return InstructionReceipt(
            signature=base58.b58encode(digest).decode(),
            instruction=instruction,
            program_id=self.program_id,
            accounts=tuple(accounts),
            account_data=written,
            slot=slot,
            block_time=block_time,
        )

    def _load_vault(self, tx: Transaction) -> Vault:
        data = tx.read(self.vault_address)
        if data is None:
            raise NotInitialized()
        return Vault.from_bytes(data)

    # -- reads ----------------------------------------------------------------

    def get_vault(self) -> Vault | None:
        data = self._accounts.get(self.vault_address)
        return Vault.from_bytes(data) if data is not None else None

    def get_record(self, address: str) -> EscrowRecord | None:
        data = self._accounts.get(address)
        if data is None or data[:8] != RECORD_DISCRIMINATOR:
            return None
        return EscrowRecord.from_bytes(data)

    def records(self) -> dict[str, EscrowRecord]:
        """Every escrow record currently on the ledger, keyed by address."""
        found: dict[str, EscrowRecord] = {}
        for address, data in self._accounts.snapshot().items():
            if data[:8] == RECORD_DISCRIMINATOR:
                found[address] = EscrowRecord.from_bytes(data)
        return found

    def get_whitelist(self, token_mint: str) -> TokenWhitelist | None:
        address, _ = derive_whitelist_address(self.program_id, token_mint)
        data = self._accounts.get(address)
        if data is None or data[:8] != WHITELIST_DISCRIMINATOR:
            return None
        return TokenWhitelist.from_bytes(data)

    def is_whitelisted(self, token_mint: str) -> bool:
        entry = self.get_whitelist(token_mint)
        return entry is not None and entry.enabled

    def record_address(self, player: str, identifier: int) -> str:
        return derive_record_address(self.program_id, player, identifier)[0]

    # -- instructions ---------------------------------------------------------

    def initialize(self, authority: str) -> InstructionReceipt:
        """Create the vault. Fails ``AlreadyInitialized`` if it exists."""

        def body(tx: Transaction) -> None:
            if tx.read(self.vault_address) is not None:
                raise AlreadyInitialized()
            vault = Vault(authority=authority, bump=self._vault_bump)
            tx.write(self.vault_address, vault.to_bytes())

        _, written = self._execute(body)
        logger.info("Treasure vault initialized (authority %s).", authority)
        return self._receipt(
            "initialize_vault", [self.vault_address, authority, SYSTEM_PROGRAM_ID], written,
        )

    def hide(self, player: str, amount: int, identifier: int) -> InstructionReceipt:
        """Lock ``amount`` tokens in the vault under a new escrow record."""
        _check_u64("amount", amount)
        identifier_seed(identifier)
        if amount < self.min_deposit:
            raise InsufficientDeposit(
                f"Treasure amount is too low (minimum {_format_tokens(self.min_deposit)} tokens)"
            )

        record_address, bump = derive_record_address(self.program_id, player, identifier)

        def body(tx: Transaction) -> EscrowRecord:
            vault = self._load_vault(tx)
            if tx.read(record_address) is not None:
                raise RecordAlreadyExists()
            try:
                self._tokens.transfer(tx, player, self.vault_address, amount)
            except InsufficientFundsError as exc:
                raise InsufficientBalance(str(exc)) from exc
            if vault.total_hidden + amount > U64_MAX:
                raise ArithmeticOverflow()
            record = EscrowRecord(
                player=player,
                amount=amount,
                identifier=identifier,
                claimed=False,
                tier=calculate_tier(amount),
                bump=bump,
            )
            vault.total_hidden += amount
            tx.write(record_address, record.to_bytes())
            tx.write(self.vault_address, vault.to_bytes())
            return record

        record, written = self._execute(body)
        logger.info(
            "Treasure hidden: %d units by %s (tier %d, record %s).",
            amount, player, record.tier, record_address,
        )
        return self._receipt(
            HIDE_INSTRUCTION,
            [
                player,
                self._tokens.token_account(player),
                self._tokens.token_account(self.vault_address),
                self.vault_address,
                record_address,
                TOKEN_PROGRAM_ID,
                SYSTEM_PROGRAM_ID,
            ],
            written,
        )

    def claim(self, player: str, record_address: str) -> InstructionReceipt:
        """Flag a record as claimed. Does not release the escrowed tokens."""

        def body(tx: Transaction) -> EscrowRecord:
            data = tx.read(record_address)
            if data is None or data[:8] != RECORD_DISCRIMINATOR:
                raise RecordNotFound()
            record = EscrowRecord.from_bytes(data)
            if record.player != player:
                raise Unauthorized()
            if record.claimed:
                raise AlreadyClaimed()
            vault = self._load_vault(tx)
            if vault.total_claimed + record.amount > U64_MAX:
                raise ArithmeticOverflow()
            record.claimed = True
            vault.total_claimed += record.amount
            tx.write(record_address, record.to_bytes())
            tx.write(self.vault_address, vault.to_bytes())
            return record

        record, written = self._execute(body)
        logger.info("Treasure claimed: record %s by %s.", record_address, player)
        return self._receipt(
            CLAIM_INSTRUCTION, [player, record_address, self.vault_address], written,
        )

    def update_vault(self, authority: str, new_authority: str) -> InstructionReceipt:
        """Hand vault administration to ``new_authority``."""

        def body(tx: Transaction) -> None:
            vault = self._load_vault(tx)
            if vault.authority != authority:
                raise Unauthorized()
            vault.authority = new_authority
            tx.write(self.vault_address, vault.to_bytes())

        _, written = self._execute(body)
        logger.info("Vault authority updated to %s.", new_authority)
        return self._receipt("update_vault", [self.vault_address, authority], written)

    def whitelist_token(self, authority: str, token_mint: str) -> InstructionReceipt:
        """Approve ``token_mint`` for hiding. Only the vault authority may call it."""
        address, bump = derive_whitelist_address(self.program_id, token_mint)

        def body(tx: Transaction) -> None:
            vault = self._load_vault(tx)
            if vault.authority != authority:
                raise Unauthorized()
            if tx.read(address) is not None:
                raise TokenAlreadyWhitelisted()
            tx.write(address, TokenWhitelist(token_mint=token_mint, bump=bump).to_bytes())

        _, written = self._execute(body)
        logger.info("Token whitelisted: %s.", token_mint)
        return self._receipt(
            WHITELIST_INSTRUCTION,
            [address, token_mint, self.vault_address, authority, SYSTEM_PROGRAM_ID],
            written,
        )
