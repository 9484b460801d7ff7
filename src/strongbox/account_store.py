"""Versioned account store emulating the ledger's per-account write ordering.

Every account is one row holding raw bytes and a version counter. An
instruction runs inside a ``Transaction`` that records the version of each
row it reads and stages its writes; ``commit()`` applies all staged writes
at once, and only if none of the rows it read changed in the meantime.
Nothing is visible to other readers until commit.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from strongbox.addresses import derive_token_account
from strongbox.constants import U64_MAX


class ConcurrentModification(Exception):
    """A row read by a transaction changed before it committed."""

    def __init__(self, address: str) -> None:
        super().__init__(f"account {address} changed during transaction")
        self.address = address


class InsufficientFundsError(Exception):
    """Raised by the token-transfer primitive when the source balance is too low."""

    def __init__(self, owner: str, balance: int, requested: int) -> None:
        super().__init__(
            f"insufficient funds for {owner}: balance {balance}, requested {requested}"
        )
        self.owner = owner
        self.balance = balance
        self.requested = requested


@dataclass
class _Row:
    data: bytes
    version: int


class AccountStore:
    """Thread-safe map of address -> versioned account bytes."""

    def __init__(self) -> None:
        self._rows: dict[str, _Row] = {}
        self._lock = threading.Lock()

    def read(self, address: str) -> tuple[bytes | None, int]:
        """Return ``(data, version)``; absent accounts are ``(None, 0)``."""
        with self._lock:
            row = self._rows.get(address)
            if row is None:
                return None, 0
            return row.data, row.version

    def get(self, address: str) -> bytes | None:
        return self.read(address)[0]

    def addresses(self) -> list[str]:
        with self._lock:
            return list(self._rows)

    def snapshot(self) -> dict[str, bytes]:
        """Copy of every account's bytes, for before/after comparisons."""
        with self._lock:
            return {addr: row.data for addr, row in self._rows.items()}

    def begin(self) -> Transaction:
        return Transaction(self)

    def _commit(self, reads: dict[str, int], writes: dict[str, bytes]) -> None:
        with self._lock:
            for address, version in reads.items():
                row = self._rows.get(address)
                current = row.version if row is not None else 0
                if current != version:
                    raise ConcurrentModification(address)
            for address, data in writes.items():
                row = self._rows.get(address)
                if row is None:
                    self._rows[address] = _Row(data=data, version=1)
                else:
                    row.data = data
                    row.version += 1


class Transaction:
    """Staged reads and writes against an ``AccountStore``."""

    def __init__(self, store: AccountStore) -> None:
        self._store = store
        self._reads: dict[str, int] = {}
        self._writes: dict[str, bytes] = {}
        self._committed = False

    def read(self, address: str) -> bytes | None:
        if address in self._writes:
            return self._writes[address]
        data, version = self._store.read(address)
        self._reads.setdefault(address, version)
        return data

    def write(self, address: str, data: bytes) -> None:
        if self._committed:
            raise RuntimeError("transaction already committed")
        if address not in self._reads:
            self.read(address)
        self._writes[address] = data

    @property
    def writes(self) -> dict[str, bytes]:
        return dict(self._writes)

    def commit(self) -> dict[str, bytes]:
        """Apply all staged writes atomically. Returns the written accounts."""
        if self._committed:
            raise RuntimeError("transaction already committed")
        self._store._commit(self._reads, self._writes)
        self._committed = True
        return dict(self._writes)


# ---------------------------------------------------------------------------
# Token-transfer collaborator
# ---------------------------------------------------------------------------


@runtime_checkable
class TokenLedger(Protocol):
    """Token-transfer primitive consumed by the escrow program.

    ``transfer`` joins the caller's transaction so the debit, the credit and
    the program's own writes commit or fail together.
    """

    mint: str

    def token_account(self, owner: str) -> str: ...

    def balance(self, owner: str) -> int: ...

    def transfer(self, tx: Transaction, source: str, destination: str, amount: int) -> None: ...


class InMemoryTokenLedger:
    """Single-mint token balances stored as rows in an ``AccountStore``."""

    def __init__(self, accounts: AccountStore, mint: str) -> None:
        self._accounts = accounts
        self.mint = mint

    def token_account(self, owner: str) -> str:
        return derive_token_account(owner, self.mint)

    @staticmethod
    def _decode(data: bytes | None) -> int:
        return int.from_bytes(data, "little") if data else 0

    @staticmethod
    def _encode(amount: int) -> bytes:
        return amount.to_bytes(8, "little")

    def balance(self, owner: str) -> int:
        return self._decode(self._accounts.get(self.token_account(owner)))

    def mint_to(self, owner: str, amount: int) -> None:
        """Credit ``owner`` out of thin air (test and setup helper)."""
        tx = self._accounts.begin()
        address = self.token_account(owner)
        new_balance = self._decode(tx.read(address)) + amount
        if new_balance > U64_MAX:
            raise OverflowError("token balance overflow")
        tx.write(address, self._encode(new_balance))
        tx.commit()

    def transfer(self, tx: Transaction, source: str, destination: str, amount: int) -> None:
        src = self.token_account(source)
        dst = self.token_account(destination)
        src_balance = self._decode(tx.read(src))
        if src_balance < amount:
            raise InsufficientFundsError(source, src_balance, amount)
        tx.write(src, self._encode(src_balance - amount))
        dst_balance = self._decode(tx.read(dst))
        if dst_balance + amount > U64_MAX:
            raise OverflowError("token balance overflow")
        tx.write(dst, self._encode(dst_balance + amount))
