from __future__ import annotations

import asyncio
import json
import re
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import unquote

import httpx
import pytest

from academy.config import Settings
from academy.storage import JsonFileStorage

BASE_ID = "appTESTBASE01"
PAT = "patTEST.0123456789abcdef"

_FORMULA = re.compile(r"^\{(?P<field>[^}]*)\} = '(?P<value>(?:\\.|[^'\\])*)'$")


class FakeClock:
    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeAirtable:
    """Minimal in-memory stand-in for the Airtable REST API."""

    def __init__(self, page_size: int = 100) -> None:
        self.page_size = page_size
        self.tables: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.requests: List[httpx.Request] = []
        self.status_overrides: Dict[str, int] = {}
        self.network_down = False
        self.gate: Optional[asyncio.Event] = None
        self._next_id = 1

    def add(self, table: str, fields: Dict[str, Any], record_id: Optional[str] = None) -> str:
        record_id = record_id or self._new_id()
        self.tables[table].append({"id": record_id, "fields": dict(fields), "createdTime": "2024-01-01T00:00:00.000Z"})
        return record_id

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables[table]

    def calls(self, method: Optional[str] = None, table: Optional[str] = None) -> List[httpx.Request]:
        matched = []
        for request in self.requests:
            if method and request.method != method:
                continue
            if table and self._split(request)[1] != table:
                continue
            matched.append(request)
        return matched

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self._gated))

    async def _gated(self, request: httpx.Request) -> httpx.Response:
        # The response is built before the gate so a held request carries the
        # table state from the moment it arrived.
        response = self.handler(request)
        if self.gate is not None:
            await self.gate.wait()
        return response

    def _new_id(self) -> str:
        record_id = f"rec{self._next_id:05d}"
        self._next_id += 1
        return record_id

    @staticmethod
    def _split(request: httpx.Request) -> List[Optional[str]]:
        parts = [unquote(part) for part in request.url.path.split("/") if part]
        # ["v0", base, table, record_id?]
        base = parts[1] if len(parts) > 1 else None
        table = parts[2] if len(parts) > 2 else None
        record_id = parts[3] if len(parts) > 3 else None
        return [base, table, record_id]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.network_down:
            raise httpx.ConnectError("network down", request=request)
        if request.headers.get("Authorization") != f"Bearer {PAT}":
            return httpx.Response(401, json={"error": "AUTHENTICATION_REQUIRED"})
        _, table, record_id = self._split(request)
        assert table is not None
        if table in self.status_overrides:
            return httpx.Response(self.status_overrides[table], json={"error": "forced"})

        if request.method == "GET":
            return self._list(table, request)
        body = json.loads(request.content or b"{}")
        if request.method == "POST":
            new_id = self.add(table, body.get("fields", {}))
            return httpx.Response(200, json=self._find(table, new_id))
        if request.method == "PATCH":
            record = self._find(table, record_id)
            if record is None:
                return httpx.Response(404, json={"error": "NOT_FOUND"})
            record["fields"].update(body.get("fields", {}))
            return httpx.Response(200, json=record)
        return httpx.Response(405)

    def _find(self, table: str, record_id: Optional[str]) -> Optional[Dict[str, Any]]:
        return next((row for row in self.tables[table] if row["id"] == record_id), None)

    def _list(self, table: str, request: httpx.Request) -> httpx.Response:
        rows = list(self.tables[table])
        formula = request.url.params.get("filterByFormula")
        if formula:
            match = _FORMULA.match(formula)
            assert match, formula
            value = re.sub(r"\\(.)", r"\1", match.group("value"))
            rows = [row for row in rows if str(row["fields"].get(match.group("field"))) == value]
        max_records = request.url.params.get("maxRecords")
        if max_records:
            rows = rows[: int(max_records)]
        start = int(request.url.params.get("offset", "0"))
        page = rows[start : start + self.page_size]
        payload: Dict[str, Any] = {"records": page}
        if start + self.page_size < len(rows):
            payload["offset"] = str(start + self.page_size)
        return httpx.Response(200, json=payload)


@pytest.fixture()
def fake_airtable() -> FakeAirtable:
    return FakeAirtable()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def storage(tmp_path: Path) -> JsonFileStorage:
    return JsonFileStorage(tmp_path / "storage.json")


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        AIRTABLE_PAT=PAT,
        AIRTABLE_BASE_ID=BASE_ID,
        AIRTABLE_API_URL="https://airtable.test/v0",
        ACADEMY_STORAGE_PATH=str(tmp_path / "storage.json"),
    )


@pytest.fixture()
def unconfigured_settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        AIRTABLE_PAT=None,
        AIRTABLE_BASE_ID=None,
        AIRTABLE_API_URL="https://airtable.test/v0",
        ACADEMY_STORAGE_PATH=str(tmp_path / "storage.json"),
    )
