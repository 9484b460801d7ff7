"""Strongbox configuration — plain frozen dataclass, no pydantic.

The host application constructs this from its own settings and passes it
to the receiver and sync service. ``from_env()`` covers the common case of
reading the process environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

from strongbox.constants import (
    DEPOSITS_COLLECTION,
    MIN_DEPOSIT,
    PENDING_CLAIMS_COLLECTION,
    PROGRAM_ID,
)


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    return float(raw) if raw else default


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    return int(raw) if raw else default


@dataclass(frozen=True)
class StrongboxConfig:
    program_id: str = PROGRAM_ID
    token_mint: str | None = None
    min_deposit: int = MIN_DEPOSIT
    webhook_secret: str | None = None
    webhook_auth_header: str = "Authorization"
    firestore_project_id: str | None = None
    firestore_emulator_host: str | None = None
    firebase_client_email: str | None = None
    firebase_private_key: str | None = None
    deposits_collection: str = DEPOSITS_COLLECTION
    pending_collection: str = PENDING_CLAIMS_COLLECTION
    store_timeout_secs: float = 10.0
    store_retries: int = 2
    store_retry_delay: float = 0.5
    claim_lookup_attempts: int = 3
    claim_lookup_delay: float = 0.5

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> StrongboxConfig:
        """Build a config from ``STRONGBOX_*``, ``HELIUS_*`` and ``FIREBASE_*`` variables."""
        env = os.environ if environ is None else environ
        return cls(
            program_id=env.get("STRONGBOX_PROGRAM_ID") or PROGRAM_ID,
            token_mint=env.get("STRONGBOX_TOKEN_MINT") or None,
            min_deposit=_int(env, "STRONGBOX_MIN_DEPOSIT", MIN_DEPOSIT),
            webhook_secret=env.get("HELIUS_WEBHOOK_AUTH_HEADER") or None,
            webhook_auth_header=env.get("HELIUS_WEBHOOK_HEADER_NAME") or "Authorization",
            firestore_project_id=env.get("FIREBASE_PROJECT_ID") or None,
            firestore_emulator_host=env.get("FIRESTORE_EMULATOR_HOST") or None,
            firebase_client_email=env.get("FIREBASE_CLIENT_EMAIL") or None,
            firebase_private_key=env.get("FIREBASE_PRIVATE_KEY") or None,
            deposits_collection=env.get("STRONGBOX_DEPOSITS_COLLECTION") or DEPOSITS_COLLECTION,
            pending_collection=env.get("STRONGBOX_PENDING_COLLECTION") or PENDING_CLAIMS_COLLECTION,
            store_timeout_secs=_float(env, "STRONGBOX_STORE_TIMEOUT_SECS", 10.0),
            store_retries=_int(env, "STRONGBOX_STORE_RETRIES", 2),
            store_retry_delay=_float(env, "STRONGBOX_STORE_RETRY_DELAY", 0.5),
            claim_lookup_attempts=_int(env, "STRONGBOX_CLAIM_LOOKUP_ATTEMPTS", 3),
            claim_lookup_delay=_float(env, "STRONGBOX_CLAIM_LOOKUP_DELAY", 0.5),
        )
