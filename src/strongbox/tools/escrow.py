"""Escrow tools: hide, claim, vault_status, list_deposits, get_deposit.

Every tool returns a plain dict with a ``success`` flag. Program and store
errors are reported in the dict, never raised, so a host can hand the
result straight back to its caller.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from strongbox.constants import DEPOSITS_COLLECTION, DepositStatus, TOKEN_DECIMALS
from strongbox.program import EscrowError, EscrowProgram
from strongbox.store import DocumentStore, StoreError

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 500


def _escrow_failure(e: EscrowError) -> dict[str, Any]:
    return {
        "success": False,
        "error": str(e),
        "error_code": e.code,
        "error_name": type(e).__name__,
    }


def _display_amount(amount: int) -> str:
    whole, frac = divmod(amount, 10**TOKEN_DECIMALS)
    return f"{whole:,}.{frac:0{TOKEN_DECIMALS}d}".rstrip("0").rstrip(".")


async def hide_tool(
    program: EscrowProgram,
    player: str,
    amount: int,
    identifier: int | None = None,
) -> dict[str, Any]:
    """Lock ``amount`` token units in escrow for ``player``.

    Args:
        program: Escrow program to execute against.
        player: Depositor's address (the signer).
        amount: Deposit in smallest token units.
        identifier: Record salt; defaults to the current unix time.

    Returns dict with:
        success: True if the deposit was recorded.
        signature: Transaction signature of the hide.
        record_address: Address of the new escrow record.
        amount/amount_display: Deposited units and their human form.
        tier: Reward tier computed from the amount.
        error/error_code/error_name: Present on failure.
    """
    if identifier is None:
        identifier = int(time.time())
    try:
        receipt = program.hide(player, amount, identifier)
    except EscrowError as e:
        logger.info("hide rejected for %s: %s", player, e)
        return _escrow_failure(e)
    except ValueError as e:
        return {"success": False, "error": str(e)}

    record_address = program.record_address(player, identifier)
    record = program.get_record(record_address)
    return {
        "success": True,
        "signature": receipt.signature,
        "record_address": record_address,
        "amount": amount,
        "amount_display": _display_amount(amount),
        "identifier": identifier,
        "tier": int(record.tier) if record is not None else None,
    }


async def claim_tool(
    program: EscrowProgram, player: str, record_address: str,
) -> dict[str, Any]:
    """Mark the escrow record at ``record_address`` as claimed by ``player``."""
    try:
        receipt = program.claim(player, record_address)
    except EscrowError as e:
        logger.info("claim rejected for %s on %s: %s", player, record_address, e)
        return _escrow_failure(e)
    return {
        "success": True,
        "signature": receipt.signature,
        "record_address": record_address,
        "claimed_by": player,
    }


async def vault_status_tool(program: EscrowProgram) -> dict[str, Any]:
    """Vault totals plus a count of active and claimed records. Read-only."""
    vault = program.get_vault()
    if vault is None:
        return {"success": False, "error": "Vault is not initialized.", "initialized": False}

    records = program.records()
    claimed = sum(1 for r in records.values() if r.claimed)
    return {
        "success": True,
        "initialized": True,
        "vault_address": program.vault_address,
        "program_id": program.program_id,
        **vault.to_dict(),
        "outstanding": vault.total_hidden - vault.total_claimed,
        "records": len(records),
        "active_records": len(records) - claimed,
        "claimed_records": claimed,
    }


async def list_deposits_tool(
    store: DocumentStore,
    status: str | None = DepositStatus.ACTIVE.value,
    wallet_address: str | None = None,
    limit: int = 50,
    collection: str = DEPOSITS_COLLECTION,
    token_type: str | None = None,
) -> dict[str, Any]:
    """List cached deposits, newest ``hiddenAt`` first.

    Queries by ``wallet_address`` when given, otherwise by ``status``. The
    remaining filters (``status`` under a wallet query, ``token_type``)
    narrow the result.
    """
    if limit <= 0 or limit > MAX_LIST_LIMIT:
        return {"success": False, "error": f"limit must be between 1 and {MAX_LIST_LIMIT}."}
    if status is not None and status not in {s.value for s in DepositStatus}:
        return {"success": False, "error": f"Unknown status: {status}"}
    if status is None and wallet_address is None:
        return {"success": False, "error": "Provide a status or a wallet_address."}

    if wallet_address is not None:
        field, value = "walletAddress", wallet_address
        narrow = {"status": status} if status is not None else {}
    else:
        field, value = "status", status
        narrow = {}
    if token_type is not None:
        narrow["tokenType"] = token_type

    try:
        rows = await store.query(
            collection, field, value, order_by="hiddenAt",
            limit=MAX_LIST_LIMIT if narrow else limit,
        )
    except StoreError as e:
        logger.warning("list_deposits failed: %s", e)
        return {"success": False, "error": f"Store error: {e}"}

    if narrow:
        rows = [
            row for row in rows
            if all(row[1].get(k) == v for k, v in narrow.items())
        ][:limit]

    return {
        "success": True,
        "count": len(rows),
        "deposits": [{"id": doc_id, **doc} for doc_id, doc in rows],
    }


async def get_deposit_tool(
    store: DocumentStore, signature: str, collection: str = DEPOSITS_COLLECTION,
) -> dict[str, Any]:
    """Fetch one cached deposit by its hide transaction signature."""
    try:
        doc = await store.get(collection, signature)
    except StoreError as e:
        logger.warning("get_deposit failed for %s: %s", signature, e)
        return {"success": False, "error": f"Store error: {e}"}
    if doc is None:
        return {"success": False, "error": f"No deposit recorded for {signature}."}
    return {"success": True, "deposit": {"id": signature, **doc}}
