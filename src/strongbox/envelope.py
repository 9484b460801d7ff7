"""Strict internal transaction envelope and the adapter that builds it.

Webhook providers deliver loosely-typed JSON whose shape drifts between
"enhanced" payloads (``signature`` at the top level, ``instructions`` with
inline program ids) and raw RPC payloads (``transaction.message`` with
index-based instructions plus ``meta``). ``parse_envelope`` is the single
place either shape is trusted; everything downstream sees only
``TransactionEnvelope``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import base58

from strongbox.constants import I64_MAX
from strongbox.decoder import DecodeError, decode_account_data


class EnvelopeError(ValueError):
    """Raised when a delivered transaction does not fit the envelope contract."""


# 9999-12-31T23:59:59Z, the last second a ``datetime`` can represent.
_MAX_BLOCK_TIME = 253_402_300_799


# ---------------------------------------------------------------------------
# Envelope types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InstructionInfo:
    program_id: str
    accounts: tuple[str, ...] = ()
    data: bytes = b""
    name: str | None = None


@dataclass(frozen=True)
class AccountState:
    address: str
    data: bytes | None = None
    owner: str | None = None


@dataclass(frozen=True)
class TokenTransfer:
    from_user: str | None
    to_user: str | None
    amount: float
    mint: str | None = None


@dataclass(frozen=True)
class ProgramEvent:
    type: str
    program_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TransactionEnvelope:
    signature: str
    block_time: int | None = None
    slot: int | None = None
    fee: int | None = None
    fee_payer: str | None = None
    account_keys: tuple[str, ...] = ()
    instructions: tuple[InstructionInfo, ...] = ()
    account_states: tuple[AccountState, ...] = ()
    token_transfers: tuple[TokenTransfer, ...] = ()
    events: tuple[ProgramEvent, ...] = ()
    log_messages: tuple[str, ...] = ()

    def touched_accounts(self) -> frozenset[str]:
        """Every address the transaction mentions."""
        touched = set(self.account_keys)
        for ix in self.instructions:
            touched.add(ix.program_id)
            touched.update(ix.accounts)
        touched.update(state.address for state in self.account_states)
        return frozenset(touched)

    def account_state(self, address: str) -> AccountState | None:
        for state in self.account_states:
            if state.address == address and state.data is not None:
                return state
        return None


# ---------------------------------------------------------------------------
# Field validators
# ---------------------------------------------------------------------------


def _opt_int(obj: dict[str, Any], *keys: str) -> int | None:
    for key in keys:
        value = obj.get(key)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int):
            raise EnvelopeError(f"{key} must be an integer, got {value!r}")
        return value
    return None


def _opt_bounded(obj: dict[str, Any], upper: int, *keys: str) -> int | None:
    value = _opt_int(obj, *keys)
    if value is not None and not 0 <= value <= upper:
        raise EnvelopeError(f"{keys[0]} out of range: {value}")
    return value


def _opt_str(obj: dict[str, Any], key: str) -> str | None:
    value = obj.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise EnvelopeError(f"{key} must be a string, got {type(value).__name__}")
    return value


def _list_of_dicts(obj: dict[str, Any], key: str) -> list[dict[str, Any]]:
    value = obj.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, dict) for v in value):
        raise EnvelopeError(f"{key} must be a list of objects")
    return value


def _list_of_str(value: Any, key: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise EnvelopeError(f"{key} must be a list of strings")
    return tuple(value)


def _instruction_data(raw: Any) -> bytes:
    if raw is None or raw == "":
        return b""
    if not isinstance(raw, str):
        raise EnvelopeError("instruction data must be a base58 string")
    try:
        return base58.b58decode(raw)
    except ValueError as exc:
        raise EnvelopeError(f"instruction data is not base58: {exc}") from exc


# ---------------------------------------------------------------------------
# Shape adapters
# ---------------------------------------------------------------------------


def _parse_instruction(raw: dict[str, Any], account_keys: tuple[str, ...]) -> InstructionInfo:
    program_id = _opt_str(raw, "programId")
    accounts_raw = raw.get("accounts")

    if program_id is None and "programIdIndex" in raw:
        # Raw RPC shape: program and accounts are indices into accountKeys.
        index = raw["programIdIndex"]
        if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < len(account_keys):
            raise EnvelopeError(f"programIdIndex out of range: {index!r}")
        program_id = account_keys[index]
        if accounts_raw is None:
            accounts_raw = []
        if not isinstance(accounts_raw, list) or not all(
            isinstance(i, int) and not isinstance(i, bool) and 0 <= i < len(account_keys)
            for i in accounts_raw
        ):
            raise EnvelopeError("instruction account indices out of range")
        accounts = tuple(account_keys[i] for i in accounts_raw)
    else:
        accounts = _list_of_str(accounts_raw, "instruction accounts")

    if program_id is None:
        raise EnvelopeError("instruction missing programId")

    return InstructionInfo(
        program_id=program_id,
        accounts=accounts,
        data=_instruction_data(raw.get("data")),
        name=_opt_str(raw, "name"),
    )


def _parse_account_state(raw: dict[str, Any]) -> AccountState:
    address = _opt_str(raw, "account")
    if address is None:
        raise EnvelopeError("accountData entry missing account")
    data: bytes | None = None
    if raw.get("data") is not None:
        try:
            data = decode_account_data(raw["data"])
        except DecodeError as exc:
            raise EnvelopeError(f"account {address}: {exc}") from exc
    return AccountState(address=address, data=data, owner=_opt_str(raw, "owner"))


def _parse_token_transfer(raw: dict[str, Any]) -> TokenTransfer:
    amount = raw.get("tokenAmount", 0)
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise EnvelopeError(f"tokenAmount must be numeric, got {amount!r}")
    return TokenTransfer(
        from_user=_opt_str(raw, "fromUserAccount"),
        to_user=_opt_str(raw, "toUserAccount"),
        amount=amount,
        mint=_opt_str(raw, "mint"),
    )


def _parse_event(raw: dict[str, Any]) -> ProgramEvent:
    event_type = _opt_str(raw, "type")
    if event_type is None:
        raise EnvelopeError("event missing type")
    data = raw.get("data") or {}
    if not isinstance(data, dict):
        raise EnvelopeError("event data must be an object")
    return ProgramEvent(type=event_type, program_id=_opt_str(raw, "programId"), data=data)


def _parse_events(raw: Any) -> tuple[ProgramEvent, ...]:
    if raw is None:
        return ()
    if isinstance(raw, dict):
        # Enhanced payloads key events by kind: {"swap": {...}, "nft": {...}}.
        return tuple(
            ProgramEvent(type=str(kind).upper(), data=value if isinstance(value, dict) else {})
            for kind, value in raw.items()
            if value is not None
        )
    if not isinstance(raw, list) or not all(isinstance(e, dict) for e in raw):
        raise EnvelopeError("events must be a list of objects")
    return tuple(_parse_event(e) for e in raw)


def parse_envelope(raw: Any) -> TransactionEnvelope:
    """Validate one delivered transaction and build a ``TransactionEnvelope``.

    Raises ``EnvelopeError`` on anything that does not fit; never returns a
    partially-populated envelope.
    """
    if not isinstance(raw, dict):
        raise EnvelopeError("transaction envelope must be an object")

    tx = raw.get("transaction")
    if tx is not None and not isinstance(tx, dict):
        raise EnvelopeError("transaction must be an object")
    message = (tx or {}).get("message") or {}
    if not isinstance(message, dict):
        raise EnvelopeError("transaction.message must be an object")
    meta = raw.get("meta") or {}
    if not isinstance(meta, dict):
        raise EnvelopeError("meta must be an object")

    signature = _opt_str(raw, "signature")
    if signature is None and tx is not None:
        signatures = _list_of_str(tx.get("signatures"), "transaction.signatures")
        signature = signatures[0] if signatures else None
    if signature is None:
        raise EnvelopeError("transaction envelope missing signature")

    keys_raw = raw.get("accountKeys", message.get("accountKeys"))
    if isinstance(keys_raw, list) and keys_raw and all(isinstance(k, dict) for k in keys_raw):
        # jsonParsed shape: [{"pubkey": ..., "signer": ...}, ...]
        keys_raw = [k.get("pubkey") for k in keys_raw]
    account_keys = _list_of_str(keys_raw, "accountKeys")

    if "instructions" in raw:
        instructions_raw = _list_of_dicts(raw, "instructions")
    else:
        instructions_raw = _list_of_dicts(message, "instructions")
    instructions = tuple(_parse_instruction(ix, account_keys) for ix in instructions_raw)

    fee = _opt_bounded(raw, I64_MAX, "fee")
    if fee is None:
        fee = _opt_bounded(meta, I64_MAX, "fee")
    logs = raw.get("logMessages", meta.get("logMessages"))

    return TransactionEnvelope(
        signature=signature,
        block_time=_opt_bounded(raw, _MAX_BLOCK_TIME, "timestamp", "blockTime"),
        slot=_opt_bounded(raw, I64_MAX, "slot"),
        fee=fee,
        fee_payer=_opt_str(raw, "feePayer") or (account_keys[0] if account_keys else None),
        account_keys=account_keys,
        instructions=instructions,
        account_states=tuple(_parse_account_state(a) for a in _list_of_dicts(raw, "accountData")),
        token_transfers=tuple(
            _parse_token_transfer(t) for t in _list_of_dicts(raw, "tokenTransfers")
        ),
        events=_parse_events(raw.get("events")),
        log_messages=_list_of_str(logs, "logMessages"),
    )
