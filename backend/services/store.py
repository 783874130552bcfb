"""Record store access — the only module that talks to the remote store.

LeanCloudStore wraps the LeanCloud REST API (https://<server>/1.1/classes/...)
with an httpx.AsyncClient. MemoryStore keeps the same contract in a dict and
backs local runs and tests.

Error mapping:
    code 101 / HTTP 404 on a class query -> CollectionNotFoundError
    HTTP 401/403, code 119/403           -> PermissionDeniedError (logged)
    transport failures                   -> RecordStoreNetworkError
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

from errors import (
    CollectionNotFoundError,
    PermissionDeniedError,
    RecordStoreError,
    RecordStoreNetworkError,
)
from services.records import parse_datetime

logger = logging.getLogger(__name__)

# LeanCloud caps a single page at 1000 rows
MAX_PAGE_SIZE = 1000
DEFAULT_LIMIT = 100

CLASS_NOT_FOUND_CODE = 101
PERMISSION_CODES = {119, 403}


def encode_value(value: Any) -> Any:
    """Encode a query/save value in the store's JSON conventions."""
    if isinstance(value, datetime):
        return {"__type": "Date", "iso": to_iso(value)}
    if isinstance(value, (list, tuple, set)):
        return [encode_value(v) for v in value]
    return value


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


class Query:
    """Fluent query description, independent of the store that runs it."""

    def __init__(self, class_name: str):
        self.class_name = class_name
        self.where: dict[str, Any] = {}
        self.order: list[str] = []
        self.skip_count = 0
        self.limit_count = DEFAULT_LIMIT
        self.keys: list[str] | None = None

    def _add_op(self, field: str, op: str, value: Any) -> "Query":
        current = self.where.get(field)
        if not isinstance(current, dict) or "__type" in current:
            current = {}
        current[op] = encode_value(value)
        self.where[field] = current
        return self

    def equal_to(self, field: str, value: Any) -> "Query":
        self.where[field] = encode_value(value)
        return self

    def not_equal_to(self, field: str, value: Any) -> "Query":
        return self._add_op(field, "$ne", value)

    def contained_in(self, field: str, values) -> "Query":
        return self._add_op(field, "$in", list(values))

    def contains_all(self, field: str, values) -> "Query":
        return self._add_op(field, "$all", list(values))

    def exists(self, field: str) -> "Query":
        return self._add_op(field, "$exists", True)

    def greater_than_or_equal_to(self, field: str, value: Any) -> "Query":
        return self._add_op(field, "$gte", value)

    def less_than_or_equal_to(self, field: str, value: Any) -> "Query":
        return self._add_op(field, "$lte", value)

    def ascending(self, field: str) -> "Query":
        self.order.append(field)
        return self

    def descending(self, field: str) -> "Query":
        self.order.append(f"-{field}")
        return self

    def skip(self, count: int) -> "Query":
        self.skip_count = max(0, count)
        return self

    def limit(self, count: int) -> "Query":
        self.limit_count = max(0, count)
        return self

    def select(self, *fields: str) -> "Query":
        self.keys = list(fields)
        return self

    def __repr__(self) -> str:
        return f"Query({self.class_name!r}, where={self.where}, order={self.order}, limit={self.limit_count})"


class RecordStore(Protocol):
    async def find(self, query: Query) -> list[dict]:
        """Return every matching raw record, honoring order/skip/limit."""

    async def first(self, query: Query) -> dict | None:
        """Return the first matching raw record or None."""

    async def count(self, query: Query) -> int:
        """Count matching records, ignoring skip/limit."""

    async def get(self, class_name: str, object_id: str) -> dict:
        """Fetch a single record by id."""

    async def save(self, class_name: str, data: dict, object_id: str | None = None) -> dict:
        """Create (no object_id) or update a record; returns the stored record."""

    async def destroy(self, class_name: str, object_id: str) -> None:
        """Delete a record."""

    async def increment(self, class_name: str, object_id: str, field: str, amount: int = 1) -> dict:
        """Atomically add amount to a numeric field."""

    async def close(self) -> None:
        """Release network resources."""


# ---------------------------------------------------------------------------
# LeanCloud REST client
# ---------------------------------------------------------------------------


class LeanCloudStore:
    def __init__(
        self,
        app_id: str,
        app_key: str,
        server_url: str,
        timeout: float = 10,
        client: httpx.AsyncClient | None = None,
    ):
        self._client = client or httpx.AsyncClient(
            base_url=server_url.rstrip("/") + "/1.1",
            headers={
                "X-LC-Id": app_id,
                "X-LC-Key": app_key,
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, class_name: str, **kwargs) -> dict:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("Record store request failed (%s %s): %s", method, path, e)
            raise RecordStoreNetworkError(str(e)) from e

        if resp.is_success:
            return resp.json() if resp.content else {}

        try:
            body = resp.json()
        except ValueError:
            body = {}
        code = body.get("code") if isinstance(body, dict) else None
        message = body.get("error", resp.text) if isinstance(body, dict) else resp.text

        if code == CLASS_NOT_FOUND_CODE or resp.status_code == 404:
            raise CollectionNotFoundError(class_name, code=code)
        if resp.status_code in (401, 403) or code in PERMISSION_CODES:
            logger.warning("Permission denied on %s (code=%s): %s", class_name, code, message)
            raise PermissionDeniedError(class_name, code=code)
        raise RecordStoreError(
            f"Record store error on {class_name}: {message}",
            status_code=502,
            code=code,
        )

    def _params(self, query: Query) -> dict:
        params: dict[str, Any] = {}
        if query.where:
            params["where"] = json.dumps(query.where)
        if query.order:
            params["order"] = ",".join(query.order)
        if query.keys:
            params["keys"] = ",".join(query.keys)
        return params

    async def find(self, query: Query) -> list[dict]:
        """Run the query, paging through results when limit exceeds one page."""
        base = self._params(query)
        results: list[dict] = []
        skip = query.skip_count
        remaining = query.limit_count

        while remaining > 0:
            page_size = min(remaining, MAX_PAGE_SIZE)
            params = {**base, "skip": skip, "limit": page_size}
            body = await self._request("GET", f"/classes/{query.class_name}", query.class_name, params=params)
            page = body.get("results", [])
            results.extend(page)
            if len(page) < page_size:
                break
            skip += page_size
            remaining -= page_size

        logger.debug("Fetched %d %s records", len(results), query.class_name)
        return results

    async def first(self, query: Query) -> dict | None:
        params = {**self._params(query), "skip": query.skip_count, "limit": 1}
        body = await self._request("GET", f"/classes/{query.class_name}", query.class_name, params=params)
        results = body.get("results", [])
        return results[0] if results else None

    async def count(self, query: Query) -> int:
        params = {**self._params(query), "count": 1, "limit": 0}
        body = await self._request("GET", f"/classes/{query.class_name}", query.class_name, params=params)
        return int(body.get("count", 0))

    async def get(self, class_name: str, object_id: str) -> dict:
        body = await self._request("GET", f"/classes/{class_name}/{object_id}", class_name)
        if not body:
            raise RecordStoreError(f"{class_name} {object_id} not found", status_code=404)
        return body

    async def save(self, class_name: str, data: dict, object_id: str | None = None) -> dict:
        payload = {key: encode_value(value) for key, value in data.items()}
        if object_id is None:
            body = await self._request(
                "POST", f"/classes/{class_name}", class_name,
                params={"fetchWhenSave": "true"}, json=payload,
            )
        else:
            body = await self._request(
                "PUT", f"/classes/{class_name}/{object_id}", class_name,
                params={"fetchWhenSave": "true"}, json=payload,
            )
        return {**payload, **body}

    async def destroy(self, class_name: str, object_id: str) -> None:
        await self._request("DELETE", f"/classes/{class_name}/{object_id}", class_name)

    async def increment(self, class_name: str, object_id: str, field: str, amount: int = 1) -> dict:
        return await self._request(
            "PUT", f"/classes/{class_name}/{object_id}", class_name,
            params={"fetchWhenSave": "true"},
            json={field: {"__op": "Increment", "amount": amount}},
        )


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


def _is_date(value: Any) -> bool:
    return isinstance(value, datetime) or (isinstance(value, dict) and value.get("__type") == "Date")


def _compare_pair(actual: Any, expected: Any) -> tuple[Any, Any] | None:
    if _is_date(expected):
        if actual is None:
            return None
        return parse_datetime(actual), parse_datetime(expected)
    if actual is None or type(actual) is not type(expected):
        return None
    return actual, expected


def _matches(record: dict, field: str, constraint: Any) -> bool:
    actual = record.get(field)
    if not isinstance(constraint, dict) or "__type" in constraint:
        if isinstance(actual, list):
            return constraint in actual
        pair = _compare_pair(actual, constraint)
        return pair is not None and pair[0] == pair[1]

    for op, expected in constraint.items():
        if op == "$ne":
            if actual == expected:
                return False
        elif op == "$in":
            if isinstance(actual, list):
                if not set(actual) & set(expected):
                    return False
            elif actual not in expected:
                return False
        elif op == "$all":
            if not isinstance(actual, list) or not set(expected) <= set(actual):
                return False
        elif op == "$exists":
            if (actual is not None) != bool(expected):
                return False
        elif op in ("$gte", "$lte"):
            pair = _compare_pair(actual, expected)
            if pair is None:
                return False
            if op == "$gte" and pair[0] < pair[1]:
                return False
            if op == "$lte" and pair[0] > pair[1]:
                return False
        else:
            raise ValueError(f"Unsupported query operator: {op}")
    return True


class MemoryStore:
    """Dict-backed record store. Collections must be created before use."""

    def __init__(self, collections: dict[str, list[dict]] | None = None):
        self._classes: dict[str, dict[str, dict]] = {}
        for class_name, records in (collections or {}).items():
            self.create_collection(class_name)
            self.add(class_name, *records)

    def create_collection(self, class_name: str) -> None:
        self._classes.setdefault(class_name, {})

    def drop_collection(self, class_name: str) -> None:
        self._classes.pop(class_name, None)

    def add(self, class_name: str, *records: dict) -> list[dict]:
        collection = self._collection(class_name)
        stored = []
        for raw in records:
            record = {key: encode_value(value) for key, value in raw.items()}
            now = to_iso(datetime.now(timezone.utc))
            record.setdefault("objectId", uuid.uuid4().hex[:24])
            for stamp in ("createdAt", "updatedAt"):
                value = raw.get(stamp)
                record[stamp] = to_iso(parse_datetime(value)) if value is not None else now
            collection[record["objectId"]] = record
            stored.append(dict(record))
        return stored

    def _collection(self, class_name: str) -> dict[str, dict]:
        collection = self._classes.get(class_name)
        if collection is None:
            raise CollectionNotFoundError(class_name, code=CLASS_NOT_FOUND_CODE)
        return collection

    def _record(self, class_name: str, object_id: str) -> dict:
        record = self._collection(class_name).get(object_id)
        if record is None:
            raise RecordStoreError(f"{class_name} {object_id} not found", status_code=404)
        return record

    def _select(self, record: dict, keys: list[str] | None) -> dict:
        if not keys:
            return dict(record)
        wanted = set(keys) | {"objectId", "createdAt", "updatedAt"}
        return {key: value for key, value in record.items() if key in wanted}

    def _matching(self, query: Query) -> list[dict]:
        rows = [
            record for record in self._collection(query.class_name).values()
            if all(_matches(record, field, constraint) for field, constraint in query.where.items())
        ]
        for order in reversed(query.order):
            field = order.lstrip("-")
            rows.sort(
                key=lambda r: (r.get(field) is not None, r.get(field)),
                reverse=order.startswith("-"),
            )
        return rows

    async def find(self, query: Query) -> list[dict]:
        rows = self._matching(query)
        window = rows[query.skip_count:query.skip_count + query.limit_count]
        return [self._select(record, query.keys) for record in window]

    async def first(self, query: Query) -> dict | None:
        rows = self._matching(query)[query.skip_count:]
        return self._select(rows[0], query.keys) if rows else None

    async def count(self, query: Query) -> int:
        return len(self._matching(query))

    async def get(self, class_name: str, object_id: str) -> dict:
        return dict(self._record(class_name, object_id))

    async def save(self, class_name: str, data: dict, object_id: str | None = None) -> dict:
        if object_id is None:
            return self.add(class_name, data)[0]
        record = self._record(class_name, object_id)
        record.update({key: encode_value(value) for key, value in data.items()})
        record["updatedAt"] = to_iso(datetime.now(timezone.utc))
        return dict(record)

    async def destroy(self, class_name: str, object_id: str) -> None:
        self._record(class_name, object_id)
        del self._classes[class_name][object_id]

    async def increment(self, class_name: str, object_id: str, field: str, amount: int = 1) -> dict:
        record = self._record(class_name, object_id)
        record[field] = (record.get(field) or 0) + amount
        return dict(record)

    async def close(self) -> None:
        return None
