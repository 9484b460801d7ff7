"""Webhook receiver for enhanced-transaction pushes.

``POST /api/webhooks/helius`` takes a batch of transaction envelopes,
authenticates the sender with a pre-shared header value, and feeds each
relevant envelope through extraction and the sync service. Envelopes are
handled independently; the response status reflects the worst outcome so
the transport redelivers batches that hit a transient store failure.
"""

from __future__ import annotations

import hmac
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from strongbox import __version__
from strongbox.config import StrongboxConfig
from strongbox.credentials import ServiceAccountCredentials
from strongbox.decoder import DecodeError
from strongbox.envelope import EnvelopeError, parse_envelope
from strongbox.extractor import extract_event
from strongbox.store import DocumentStore, StoreError
from strongbox.stores import FirestoreStore, InMemoryDocumentStore
from strongbox.sync import SyncResult, SyncService

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/webhooks/helius"


@dataclass
class BatchOutcome:
    """Per-request tally of what happened to each envelope."""

    processed: int = 0
    skipped: int = 0
    failed: int = 0
    transient: bool = False
    crashed: bool = False
    results: list[SyncResult] = field(default_factory=list)

    @property
    def status_code(self) -> int:
        if self.crashed:
            return 500
        if self.transient:
            return 503
        return 200


def _signature_of(raw: Any) -> str | None:
    if not isinstance(raw, dict):
        return None
    sig = raw.get("signature")
    if isinstance(sig, str):
        return sig
    transaction = raw.get("transaction")
    sigs = transaction.get("signatures") if isinstance(transaction, dict) else None
    if isinstance(sigs, list) and sigs and isinstance(sigs[0], str):
        return sigs[0]
    return None


async def process_batch(
    payloads: list[Any], config: StrongboxConfig, sync: SyncService,
) -> BatchOutcome:
    """Extract and sync every envelope in ``payloads``."""
    outcome = BatchOutcome()
    for raw in payloads:
        signature = _signature_of(raw)
        try:
            envelope = parse_envelope(raw)
            event = extract_event(envelope, config.program_id, config.token_mint)
        except (EnvelopeError, DecodeError) as exc:
            outcome.failed += 1
            logger.warning(
                "Skipping malformed transaction %s: %s", signature, exc,
                extra={"signature": signature},
            )
            continue
        except Exception:
            outcome.failed += 1
            outcome.crashed = True
            logger.exception(
                "Unexpected error extracting transaction %s.", signature,
                extra={"signature": signature},
            )
            continue

        if event is None:
            outcome.skipped += 1
            continue

        try:
            result = await sync.upsert(event)
        except StoreError as exc:
            outcome.failed += 1
            outcome.transient = True
            log = logger.warning if exc.retryable else logger.error
            log(
                "Store failure syncing %s: %s", signature, exc,
                extra={"signature": signature},
            )
            continue
        except Exception:
            outcome.failed += 1
            outcome.crashed = True
            logger.exception(
                "Unexpected error syncing transaction %s.", signature,
                extra={"signature": signature},
            )
            continue

        outcome.processed += 1
        outcome.results.append(result)
    return outcome


def _check_auth(request: Request, config: StrongboxConfig) -> None:
    if not config.webhook_secret:
        logger.warning(
            "Webhook secret not configured; accepting unauthenticated request."
        )
        return
    supplied = request.headers.get(config.webhook_auth_header)
    if supplied is None or not hmac.compare_digest(
        supplied.encode(), config.webhook_secret.encode()
    ):
        logger.warning("Rejected webhook request with missing or invalid credentials.")
        raise HTTPException(status_code=401, detail="Unauthorized")


def build_router(config: StrongboxConfig, sync: SyncService) -> APIRouter:
    router = APIRouter()

    @router.post(WEBHOOK_PATH)
    async def receive_transactions(request: Request) -> JSONResponse:
        _check_auth(request, config)

        try:
            body = json.loads(await request.body())
        except ValueError:
            raise HTTPException(status_code=400, detail="Body is not valid JSON")
        if isinstance(body, dict):
            body = [body]
        if not isinstance(body, list):
            raise HTTPException(
                status_code=400, detail="Body must be a transaction or a list of transactions",
            )

        outcome = await process_batch(body, config, sync)
        logger.info(
            "Webhook batch: %d received, %d processed, %d skipped, %d failed.",
            len(body), outcome.processed, outcome.skipped, outcome.failed,
        )
        content: dict[str, Any] = {
            "received": outcome.status_code == 200,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "processed": outcome.processed,
            "skipped": outcome.skipped,
            "failed": outcome.failed,
        }
        if outcome.status_code == 503:
            content["error"] = "Store temporarily unavailable"
        elif outcome.status_code == 500:
            content["error"] = "Internal error"
        return JSONResponse(status_code=outcome.status_code, content=content)

    @router.get(f"{WEBHOOK_PATH}/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "service": "strongbox-webhook",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "program_id": config.program_id,
            "auth_configured": bool(config.webhook_secret),
            "sync": sync.health(),
        }

    return router


def create_app(config: StrongboxConfig, sync: SyncService) -> FastAPI:
    """Build the receiver app. The sync service's store is closed on shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await sync.close()

    app = FastAPI(title="Strongbox Webhook Receiver", version=__version__, lifespan=lifespan)
    app.include_router(build_router(config, sync))
    return app


def build_store(config: StrongboxConfig) -> DocumentStore:
    """Firestore when a project or emulator is configured, else in-memory."""
    if config.firestore_emulator_host:
        return FirestoreStore(
            config.firestore_project_id or "demo-strongbox",
            emulator_host=config.firestore_emulator_host,
        )
    if config.firestore_project_id:
        credentials = None
        if config.firebase_client_email and config.firebase_private_key:
            credentials = ServiceAccountCredentials(
                config.firebase_client_email, config.firebase_private_key,
            )
        else:
            logger.warning("Firestore project set without service account credentials.")
        return FirestoreStore(config.firestore_project_id, credentials)
    logger.warning("No Firestore configured; using in-memory document store.")
    return InMemoryDocumentStore()


def app_from_env() -> FastAPI:
    """Application factory for ASGI servers (``uvicorn --factory``)."""
    config = StrongboxConfig.from_env()
    sync = SyncService.from_config(build_store(config), config)
    return create_app(config, sync)
