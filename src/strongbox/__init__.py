"""Strongbox — token escrow with an event-fed deposit cache.

Escrow program emulation, account decoding, and the webhook-to-store
synchronization pipeline.
"""

__version__ = "0.1.0"

from strongbox.config import StrongboxConfig
from strongbox.constants import DepositStatus, Tier, calculate_tier, PROGRAM_ID, MIN_DEPOSIT
from strongbox.accounts import Vault, EscrowRecord, TokenWhitelist
from strongbox.account_store import AccountStore, InMemoryTokenLedger, TokenLedger
from strongbox.program import EscrowProgram, EscrowError, InstructionReceipt
from strongbox.decoder import DecodeError, DecodedRecord, decode_escrow_record
from strongbox.envelope import EnvelopeError, TransactionEnvelope, parse_envelope
from strongbox.extractor import DepositEvent, ClaimEvent, extract_event
from strongbox.store import DocumentStore, StoreError
from strongbox.stores import FirestoreStore, InMemoryDocumentStore
from strongbox.sync import SyncService, SyncResult, SyncAction

__all__ = [
    "StrongboxConfig",
    "DepositStatus",
    "Tier",
    "calculate_tier",
    "PROGRAM_ID",
    "MIN_DEPOSIT",
    "Vault",
    "EscrowRecord",
    "TokenWhitelist",
    "AccountStore",
    "InMemoryTokenLedger",
    "TokenLedger",
    "EscrowProgram",
    "EscrowError",
    "InstructionReceipt",
    "DecodeError",
    "DecodedRecord",
    "decode_escrow_record",
    "EnvelopeError",
    "TransactionEnvelope",
    "parse_envelope",
    "DepositEvent",
    "ClaimEvent",
    "extract_event",
    "DocumentStore",
    "StoreError",
    "FirestoreStore",
    "InMemoryDocumentStore",
    "SyncService",
    "SyncResult",
    "SyncAction",
]
