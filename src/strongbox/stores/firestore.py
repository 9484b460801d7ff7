"""FirestoreStore — DocumentStore implementation over the Firestore REST API.

Self-contained: uses raw httpx, no firebase-admin dependency. Conditional
writes use Firestore preconditions, so concurrent replicas of the sync
service coordinate through the database alone.

Endpoints used (Firestore REST v1, ``{docs}`` =
``projects/{project}/databases/(default)/documents``):

- Read: ``GET {docs}/{collection}/{id}`` -> document with ``fields`` and ``updateTime``
- Create: ``POST {docs}/{collection}?documentId={id}`` -> HTTP 409 if it exists
- Conditional update: ``PATCH {docs}/{collection}/{id}`` with
  ``updateMask.fieldPaths`` and ``currentDocument.updateTime`` -> HTTP 400
  ``FAILED_PRECONDITION`` if the document changed since it was read
- Query: ``POST {docs}:runQuery`` with a ``structuredQuery``
- Delete: ``DELETE {docs}/{collection}/{id}``

When ``emulator_host`` is set (``FIRESTORE_EMULATOR_HOST``), requests go to
the local emulator over plain HTTP with the emulator's owner token.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from strongbox.credentials import CredentialsError, ServiceAccountCredentials
from strongbox.store import (
    StoreAuthError,
    StoreConflictError,
    StoreConnectionError,
    StoreError,
    StoreNotFoundError,
    StorePreconditionError,
    StoreServerError,
    StoreTimeoutError,
    StoreUnavailableError,
)

logger = logging.getLogger(__name__)

_BASE_URL = "https://firestore.googleapis.com/v1"
_CAS_ATTEMPTS = 3


# ---------------------------------------------------------------------------
# Status code -> exception mapping
# ---------------------------------------------------------------------------

_STATUS_MAP: dict[int, type[StoreError]] = {
    401: StoreAuthError,
    403: StoreAuthError,
    404: StoreNotFoundError,
    409: StoreConflictError,
    412: StorePreconditionError,
    429: StoreUnavailableError,
    503: StoreUnavailableError,
}


def _error_status(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return ""
    if isinstance(body, list) and body:
        body = body[0]
    if not isinstance(body, dict):
        return ""
    error = body.get("error")
    return str(error.get("status", "")) if isinstance(error, dict) else ""


# ---------------------------------------------------------------------------
# Value encoding
# ---------------------------------------------------------------------------


def encode_value(value: Any) -> dict[str, Any]:
    """Python value -> Firestore typed value."""
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, dict):
        return {"mapValue": {"fields": encode_fields(value)}}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(v) for v in value]}}
    raise TypeError(f"cannot encode {type(value).__name__} for Firestore")


def decode_value(value: dict[str, Any]) -> Any:
    """Firestore typed value -> Python value."""
    if "nullValue" in value:
        return None
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "mapValue" in value:
        return decode_fields(value["mapValue"].get("fields", {}))
    if "arrayValue" in value:
        return [decode_value(v) for v in value["arrayValue"].get("values", [])]
    for key in ("stringValue", "timestampValue", "referenceValue", "bytesValue"):
        if key in value:
            return value[key]
    raise ValueError(f"unsupported Firestore value: {value!r}")


def encode_fields(fields: dict[str, Any]) -> dict[str, Any]:
    return {key: encode_value(val) for key, val in fields.items()}


def decode_fields(fields: dict[str, Any]) -> dict[str, Any]:
    return {key: decode_value(val) for key, val in fields.items()}


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class FirestoreStore:
    """Firestore REST persistence implementing the ``DocumentStore`` protocol."""

    def __init__(
        self,
        project_id: str,
        credentials: ServiceAccountCredentials | None = None,
        *,
        emulator_host: str | None = None,
        database: str = "(default)",
    ) -> None:
        self._project_id = project_id
        self._credentials = credentials
        self._emulator = emulator_host is not None
        base_url = f"http://{emulator_host}/v1" if emulator_host else _BASE_URL
        self._docs = f"/projects/{project_id}/databases/{database}/documents"
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(connect=5.0, read=10.0, write=10.0, pool=5.0),
        )

    async def close(self) -> None:
        """Close the underlying HTTP clients."""
        await self._client.aclose()
        if self._credentials is not None:
            await self._credentials.close()

    # -- internal request dispatcher -----------------------------------------

    async def _headers(self) -> dict[str, str]:
        if self._emulator:
            return {"Authorization": "Bearer owner"}
        if self._credentials is None:
            return {}
        try:
            token = await self._credentials.access_token()
        except CredentialsError as exc:
            raise StoreAuthError(str(exc)) from exc
        return {"Authorization": f"Bearer {token}"}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: list[tuple[str, str]] | None = None,
        json_data: Any = None,
    ) -> Any:
        """Send a request and map errors to the store exception hierarchy."""
        headers = await self._headers()
        try:
            response = await self._client.request(
                method, path, params=params, json=json_data, headers=headers,
            )
        except httpx.TimeoutException as exc:
            raise StoreTimeoutError(str(exc)) from exc
        except httpx.HTTPError as exc:
            raise StoreConnectionError(str(exc)) from exc

        if response.status_code >= 400:
            body = response.text
            if response.status_code == 400 and _error_status(response) == "FAILED_PRECONDITION":
                raise StorePreconditionError(body, status_code=400)
            exc_cls = _STATUS_MAP.get(response.status_code)
            if exc_cls is not None:
                raise exc_cls(body, status_code=response.status_code)
            if response.status_code >= 500:
                raise StoreServerError(body, status_code=response.status_code)
            raise StoreError(body, status_code=response.status_code)

        if not response.content:
            return {}
        return response.json()

    def _doc_path(self, collection: str, doc_id: str) -> str:
        return f"{self._docs}/{collection}/{doc_id}"

    async def _get_document(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        try:
            return await self._request("GET", self._doc_path(collection, doc_id))
        except StoreNotFoundError:
            return None

    # -- DocumentStore protocol ----------------------------------------------

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        document = await self._get_document(collection, doc_id)
        if document is None:
            return None
        return decode_fields(document.get("fields", {}))

    async def create(self, collection: str, doc_id: str, fields: dict[str, Any]) -> bool:
        """Create a document; returns False if one already exists under ``doc_id``."""
        try:
            await self._request(
                "POST",
                f"{self._docs}/{collection}",
                params=[("documentId", doc_id)],
                json_data={"fields": encode_fields(fields)},
            )
        except StoreConflictError:
            return False
        return True

    async def compare_and_set(
        self,
        collection: str,
        doc_id: str,
        field: str,
        expected: Any,
        updates: dict[str, Any],
    ) -> bool:
        """Apply ``updates`` only while ``field`` still equals ``expected``.

        Reads the document, checks the field, then writes with an
        ``updateTime`` precondition. A concurrent writer makes the write
        fail, in which case the check is repeated against the fresh copy.
        """
        params = [("updateMask.fieldPaths", key) for key in updates]
        for attempt in range(_CAS_ATTEMPTS):
            document = await self._get_document(collection, doc_id)
            if document is None:
                return False
            current = decode_fields(document.get("fields", {}))
            if current.get(field) != expected:
                return False
            try:
                await self._request(
                    "PATCH",
                    self._doc_path(collection, doc_id),
                    params=params + [("currentDocument.updateTime", document["updateTime"])],
                    json_data={"fields": encode_fields(updates)},
                )
                return True
            except StorePreconditionError:
                logger.warning(
                    "Conditional write on %s/%s lost a race (attempt %d/%d).",
                    collection, doc_id, attempt + 1, _CAS_ATTEMPTS,
                )
        raise StorePreconditionError(
            f"{collection}/{doc_id} kept changing during conditional write"
        )

    async def _run_query(self, structured_query: dict[str, Any]) -> list[tuple[str, dict[str, Any]]]:
        rows = await self._request(
            "POST", f"{self._docs}:runQuery", json_data={"structuredQuery": structured_query},
        )
        results: list[tuple[str, dict[str, Any]]] = []
        for row in rows or []:
            document = row.get("document") if isinstance(row, dict) else None
            if not document:
                continue
            doc_id = document["name"].rsplit("/", 1)[-1]
            results.append((doc_id, decode_fields(document.get("fields", {}))))
        return results

    @staticmethod
    def _equality_query(
        collection: str, field: str, value: Any, limit: int,
    ) -> dict[str, Any]:
        return {
            "from": [{"collectionId": collection}],
            "where": {
                "fieldFilter": {
                    "field": {"fieldPath": field},
                    "op": "EQUAL",
                    "value": encode_value(value),
                }
            },
            "limit": limit,
        }

    async def find_one(
        self, collection: str, field: str, value: Any,
    ) -> tuple[str, dict[str, Any]] | None:
        results = await self._run_query(self._equality_query(collection, field, value, 1))
        return results[0] if results else None

    async def query(
        self,
        collection: str,
        field: str,
        value: Any,
        order_by: str | None = None,
        limit: int = 100,
    ) -> list[tuple[str, dict[str, Any]]]:
        """Documents where ``field == value``, newest ``order_by`` first."""
        structured = self._equality_query(collection, field, value, limit)
        if order_by is not None:
            structured["orderBy"] = [
                {"field": {"fieldPath": order_by}, "direction": "DESCENDING"}
            ]
        return await self._run_query(structured)

    async def delete(self, collection: str, doc_id: str) -> None:
        try:
            await self._request("DELETE", self._doc_path(collection, doc_id))
        except StoreNotFoundError:
            pass
