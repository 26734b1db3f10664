"""Async Airtable REST client that degrades to empty results instead of raising."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from .config import AirtableCredentials, Settings
from .models import RemoteRecord
from .telemetry import SyncEvent, emit_event

logger = logging.getLogger(__name__)


class AirtableError(RuntimeError):
    """Raised internally when an Airtable round trip fails."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AirtableNotConfiguredError(AirtableError):
    """Raised internally when no usable credentials are available."""


def escape_formula_value(value: Any) -> str:
    return str(value).replace("\\", "\\\\").replace("'", "\\'")


def equals_formula(field: str, value: Any) -> str:
    return f"{{{field}}} = '{escape_formula_value(value)}'"


class AirtableClient:
    """Thin wrapper over the Airtable REST contract.

    Public methods never raise: faults are logged and surface as empty lists or
    ``None``. Passing ``strict=True`` to the lookup and write helpers re-raises
    :class:`AirtableError`, which callers use when "nothing found" and "request
    failed" must not be confused.
    """

    def __init__(
        self,
        settings: Settings,
        credentials_provider: Callable[[], AirtableCredentials],
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings
        self._credentials_provider = credentials_provider
        self._client = client or httpx.AsyncClient(timeout=settings.airtable_timeout_seconds)
        self._owns_client = client is None
        self._tables = settings.table_names()

    def credentials(self) -> AirtableCredentials:
        return self._credentials_provider()

    def is_configured(self) -> bool:
        return self.credentials().is_configured

    def table_name(self, table: str) -> str:
        return self._tables.get(table, table)

    def _url(self, credentials: AirtableCredentials, table: str, record_id: Optional[str] = None) -> str:
        base = self._settings.airtable_api_url.rstrip("/")
        url = f"{base}/{quote(credentials.base_id, safe='')}/{quote(self.table_name(table), safe='')}"
        if record_id:
            url = f"{url}/{quote(record_id, safe='')}"
        return url

    async def _request(
        self,
        method: str,
        table: str,
        *,
        record_id: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        credentials = self.credentials()
        if not credentials.is_configured:
            raise AirtableNotConfiguredError("Airtable credentials are not configured.")

        headers = {
            "Authorization": f"Bearer {credentials.pat}",
            "Content-Type": "application/json",
        }
        url = self._url(credentials, table, record_id)
        try:
            response = await self._client.request(method, url, headers=headers, params=params, json=json)
        except httpx.HTTPError as exc:
            raise AirtableError(f"Network error calling {method} {self.table_name(table)}: {exc}") from exc

        if response.status_code == 404:
            raise AirtableError(f"Table '{self.table_name(table)}' not found (404).", status_code=404)
        if response.status_code == 401:
            raise AirtableError("Invalid personal access token or permissions (401).", status_code=401)
        if response.status_code >= 300:
            raise AirtableError(
                f"HTTP {response.status_code} from {method} {self.table_name(table)}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise AirtableError(f"Malformed JSON body from {self.table_name(table)}") from exc
        if not isinstance(data, dict):
            raise AirtableError(f"Unexpected response shape from {self.table_name(table)}")
        return data

    def _report(self, action: str, table: str, exc: AirtableError) -> None:
        if isinstance(exc, AirtableNotConfiguredError):
            logger.debug("Airtable not configured; skipping %s on %s", action, table)
            return
        if exc.status_code == 404:
            logger.warning("Airtable: %s", exc)
        else:
            logger.error("Airtable: %s failed on %s: %s", action, table, exc)
        emit_event(SyncEvent.AIRTABLE_REQUEST_FAILED, action=action, table=table, status_code=exc.status_code)

    @staticmethod
    def _parse_records(table: str, payload: Dict[str, Any]) -> List[RemoteRecord]:
        records: List[RemoteRecord] = []
        for item in payload.get("records") or []:
            try:
                records.append(RemoteRecord.model_validate(item))
            except ValidationError:
                logger.warning("Skipping malformed record envelope from %s", table)
        return records

    async def _fetch_all(self, table: str, params: Optional[Dict[str, Any]] = None) -> List[RemoteRecord]:
        records: List[RemoteRecord] = []
        offset: Optional[str] = None
        while True:
            page_params = dict(params or {})
            if offset:
                page_params["offset"] = offset
            payload = await self._request("GET", table, params=page_params or None)
            records.extend(self._parse_records(table, payload))
            offset = payload.get("offset") or None
            if not offset:
                return records

    async def fetch_collection(self, table: str) -> List[RemoteRecord]:
        """Fetch every row of ``table``, following pagination cursors."""
        try:
            records = await self._fetch_all(table)
        except AirtableError as exc:
            self._report("fetch", table, exc)
            return []
        logger.debug("Airtable: fetched %s raw records from %s", len(records), table)
        return records

    async def find_first(self, table: str, field: str, value: Any, *, strict: bool = False) -> Optional[RemoteRecord]:
        params = {"filterByFormula": equals_formula(field, value), "maxRecords": 1}
        try:
            payload = await self._request("GET", table, params=params)
        except AirtableError as exc:
            if strict:
                raise
            self._report("find", table, exc)
            return None
        records = self._parse_records(table, payload)
        return records[0] if records else None

    async def create_record(self, table: str, fields: Dict[str, Any], *, strict: bool = False) -> Optional[RemoteRecord]:
        try:
            payload = await self._request("POST", table, json={"fields": fields, "typecast": True})
            return RemoteRecord.model_validate(payload)
        except ValidationError as exc:
            error = AirtableError(f"Create on {table} returned no record id")
            if strict:
                raise error from exc
            self._report("create", table, error)
            return None
        except AirtableError as exc:
            if strict:
                raise
            self._report("create", table, exc)
            return None

    async def update_record(
        self,
        table: str,
        record_id: str,
        fields: Dict[str, Any],
        *,
        strict: bool = False,
    ) -> Optional[RemoteRecord]:
        try:
            payload = await self._request("PATCH", table, record_id=record_id, json={"fields": fields, "typecast": True})
            return RemoteRecord.model_validate(payload)
        except ValidationError as exc:
            error = AirtableError(f"Update on {table} returned no record id")
            if strict:
                raise error from exc
            self._report("update", table, error)
            return None
        except AirtableError as exc:
            if strict:
                raise
            self._report("update", table, exc)
            return None

    async def upsert(self, table: str, match_field: str, match_value: Any, fields: Dict[str, Any]) -> Optional[str]:
        """Find by ``match_field`` and PATCH, else POST. Returns the written record id."""
        payload = {**fields, match_field: match_value}
        try:
            existing = await self.find_first(table, match_field, match_value, strict=True)
            if existing is not None:
                written = await self.update_record(table, existing.id, payload, strict=True)
            else:
                written = await self.create_record(table, payload, strict=True)
        except AirtableError as exc:
            self._report("upsert", table, exc)
            return None
        return written.id if written else None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = [
    "AirtableClient",
    "AirtableError",
    "AirtableNotConfiguredError",
    "equals_formula",
    "escape_formula_value",
]
