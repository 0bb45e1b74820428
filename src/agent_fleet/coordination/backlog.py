"""Backlog sources: queried for candidate items, told when an item is done."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Protocol

import httpx

from agent_fleet.coordination.errors import BacklogError
from agent_fleet.coordination.models import BacklogItem, ItemStatus
from agent_fleet.storage.jsonfile import (
    CorruptDocumentError,
    locked,
    read_json_mapping,
    write_json_atomic,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class BacklogSource(Protocol):
    """Owner of the backlog; the fleet only reads it and reports completion."""

    def get_available_items(self, group: int) -> list[BacklogItem]: ...

    def mark_done(self, group: int, item: int) -> None: ...


def filter_eligible(items: Iterable[BacklogItem]) -> list[BacklogItem]:
    """Items whose status is ``todo`` or ``backlog`` (case-insensitive)."""

    return [item for item in items if item.is_eligible]


def parse_items(payload: object, *, source: str) -> list[BacklogItem]:
    """Decode a JSON list of ``{"number", "status", "title"}`` records.

    Records without an integer ``number`` or a string ``status`` are skipped.
    """

    if isinstance(payload, dict) and "items" in payload:
        payload = payload["items"]
    if not isinstance(payload, list):
        raise BacklogError(f"Expected a list of items from {source}")
    items: list[BacklogItem] = []
    for record in payload:
        if not isinstance(record, dict):
            logger.warning("Skipping non-object backlog record from %s", source)
            continue
        number = record.get("number")
        status = record.get("status")
        if isinstance(number, bool) or not isinstance(number, int) or not isinstance(status, str):
            logger.warning("Skipping malformed backlog record from %s: %r", source, record)
            continue
        title = record.get("title")
        items.append(
            BacklogItem(number=number, status=status, title=title if isinstance(title, str) else ""),
        )
    return items


class JsonFileBacklog:
    """Backlog kept in a local JSON document: ``{"<group>": [item, ...]}``."""

    def __init__(self, path: Path, *, lock_timeout_seconds: float = 5.0) -> None:
        self.path = path
        self.lock_timeout_seconds = lock_timeout_seconds

    def get_available_items(self, group: int) -> list[BacklogItem]:
        document = self._load()
        return parse_items(document.get(str(group), []), source=str(self.path))

    def mark_done(self, group: int, item: int) -> None:
        try:
            with locked(self.path, timeout_seconds=self.lock_timeout_seconds):
                document = self._load()
                records = document.get(str(group))
                if not isinstance(records, list):
                    raise BacklogError(f"Group {group} not found in {self.path}")
                for record in records:
                    if isinstance(record, dict) and record.get("number") == item:
                        record["status"] = ItemStatus.DONE.value
                        break
                else:
                    raise BacklogError(f"Item {item} not found in group {group}")
                write_json_atomic(self.path, document)
        except OSError as error:
            raise BacklogError(f"Cannot update backlog {self.path}: {error}") from error
        logger.info("Marked item %s of group %s as done", item, group)

    def _load(self) -> dict[str, Any]:
        try:
            return read_json_mapping(self.path)
        except CorruptDocumentError as error:
            raise BacklogError(str(error)) from error
        except OSError as error:
            raise BacklogError(f"Cannot read backlog {self.path}: {error}") from error


class HttpBacklog:
    """JSON REST backlog: ``GET/PATCH {base}/groups/{group}/items[/{item}]``."""

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport,
        )

    def get_available_items(self, group: int) -> list[BacklogItem]:
        path = f"/groups/{group}/items"
        try:
            response = self._client.get(path)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as error:
            logger.warning("Backlog query for group %s failed: %s", group, error)
            raise BacklogError(f"Backlog query for group {group} failed: {error}") from error
        except ValueError as error:
            raise BacklogError(f"Backlog returned invalid JSON for group {group}") from error
        return parse_items(payload, source=path)

    def mark_done(self, group: int, item: int) -> None:
        try:
            response = self._client.patch(
                f"/groups/{group}/items/{item}",
                json={"status": ItemStatus.DONE.value},
            )
            response.raise_for_status()
        except httpx.HTTPError as error:
            raise BacklogError(f"Cannot mark item {item} of group {group} done: {error}") from error
        logger.info("Marked item %s of group %s as done", item, group)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpBacklog:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
