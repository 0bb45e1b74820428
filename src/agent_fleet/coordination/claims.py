"""Lease-based claim store shared by every agent process on one host.

The store is a single JSON object keyed by ``"{group}-{item}"``. Writes go
through ``write_json_atomic`` so readers only ever see a complete document;
read-modify-write sections hold the store's advisory lock, which makes
create-if-absent linearizable between processes. Readers never lock.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, TypeVar

from filelock import Timeout

from agent_fleet.coordination.errors import ClaimStoreError
from agent_fleet.coordination.models import BacklogItem, Lease, lease_key
from agent_fleet.storage.common import parse_timestamp, utc_now
from agent_fleet.storage.jsonfile import (
    CorruptDocumentError,
    locked,
    read_json_mapping,
    write_json_atomic,
)

logger = logging.getLogger(__name__)

DEFAULT_LEASE_TTL = timedelta(hours=8)

T = TypeVar("T")


@dataclass(slots=True)
class _Snapshot:
    leases: dict[str, Lease]
    needs_repair: bool


class ClaimStore:
    """Durable map from (group, item) to a lease with a fixed TTL."""

    def __init__(  # noqa: PLR0913
        self,
        path: Path,
        *,
        lease_ttl: timedelta = DEFAULT_LEASE_TTL,
        retry_attempts: int = 3,
        retry_base_seconds: float = 1.0,
        lock_timeout_seconds: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.path = path
        self.lease_ttl = lease_ttl
        self.retry_attempts = max(1, retry_attempts)
        self.retry_base_seconds = retry_base_seconds
        self.lock_timeout_seconds = lock_timeout_seconds
        self._clock = clock
        self._sleep = sleep

    def claim(self, group: int, item: int, owner_id: str) -> bool:
        """Create a lease unless a live one is held by a different owner.

        Re-claiming a live lease by its own owner succeeds and refreshes
        ``claimed_at``.
        """

        key = lease_key(group, item)

        def _attempt() -> bool:
            with locked(self.path, timeout_seconds=self.lock_timeout_seconds):
                leases = self._read().leases
                now = self._clock()
                existing = leases.get(key)
                if existing is not None and not self.is_expired(existing, now=now):
                    if existing.owner_id != owner_id:
                        logger.info("Item %s already claimed by %s", key, existing.owner_id)
                        return False
                    logger.debug("Owner %s re-claiming %s, lease refreshed", owner_id, key)
                elif existing is not None:
                    logger.info(
                        "Lease %s held by %s expired, allowing new claim",
                        key,
                        existing.owner_id,
                    )
                leases[key] = Lease(owner_id=owner_id, claimed_at=now, group=group, item=item)
                self._write(leases)
            logger.info("Claimed %s for %s", key, owner_id)
            return True

        return self._with_retry(_attempt, description=f"Claim {key}")

    def release(self, group: int, item: int, *, owner_id: str | None = None) -> bool:
        """Delete the lease if present. Returns ``False`` when there was none.

        With ``owner_id`` the lease is only deleted while that owner holds it.
        """

        key = lease_key(group, item)

        def _attempt() -> bool:
            with locked(self.path, timeout_seconds=self.lock_timeout_seconds):
                snapshot = self._read()
                if key not in snapshot.leases:
                    if snapshot.needs_repair:
                        self._write(snapshot.leases)
                    logger.debug("No lease found for %s, nothing to release", key)
                    return False
                holder = snapshot.leases[key].owner_id
                if owner_id is not None and holder != owner_id:
                    logger.info("Lease %s now held by %s, not releasing for %s", key, holder, owner_id)
                    return False
                released = snapshot.leases.pop(key)
                self._write(snapshot.leases)
            logger.info("Released lease %s (owner %s)", key, released.owner_id)
            return True

        return self._with_retry(_attempt, description=f"Release {key}")

    def sweep_expired(self) -> int:
        """Remove leases older than the TTL. Returns the number removed."""

        snapshot = self._read()
        now = self._clock()
        if not snapshot.needs_repair and not any(
            self.is_expired(lease, now=now) for lease in snapshot.leases.values()
        ):
            return 0

        def _attempt() -> int:
            with locked(self.path, timeout_seconds=self.lock_timeout_seconds):
                current = self._read()
                sweep_now = self._clock()
                kept: dict[str, Lease] = {}
                removed = 0
                for key, lease in current.leases.items():
                    if self.is_expired(lease, now=sweep_now):
                        logger.info("Removing expired lease %s (owner %s)", key, lease.owner_id)
                        removed += 1
                        continue
                    kept[key] = lease
                if removed or current.needs_repair:
                    self._write(kept)
                return removed

        removed = self._with_retry(_attempt, description="Sweep expired leases")
        if removed:
            logger.info("Swept %d expired lease(s)", removed)
        return removed

    def available_items(
        self,
        group: int,
        candidates: Iterable[BacklogItem],
        *,
        owner_id: str | None = None,
    ) -> list[BacklogItem]:
        """Candidates without a live lease, lowest item number first.

        Items leased to ``owner_id`` count as available to that owner.
        """

        now = self._clock()
        live_keys = {
            key
            for key, lease in self._read().leases.items()
            if not self.is_expired(lease, now=now) and lease.owner_id != owner_id
        }
        candidate_list = list(candidates)
        available = [
            candidate
            for candidate in candidate_list
            if lease_key(group, candidate.number) not in live_keys
        ]
        available.sort(key=lambda candidate: candidate.number)
        logger.debug(
            "Group %s: %d available of %d candidate(s)",
            group,
            len(available),
            len(candidate_list),
        )
        return available

    def get_lease(self, group: int, item: int) -> Lease | None:
        """Live lease for the item, or ``None``."""

        lease = self._read().leases.get(lease_key(group, item))
        if lease is None or self.is_expired(lease, now=self._clock()):
            return None
        return lease

    def is_claimed(self, group: int, item: int) -> bool:
        return self.get_lease(group, item) is not None

    def leases_for_owner(self, owner_id: str) -> list[Lease]:
        return [lease for lease in self.active_leases() if lease.owner_id == owner_id]

    def active_leases(self) -> list[Lease]:
        now = self._clock()
        leases = [
            lease for lease in self._read().leases.values() if not self.is_expired(lease, now=now)
        ]
        leases.sort(key=lambda lease: (lease.group, lease.item))
        return leases

    def clear(self) -> None:
        """Drop every lease."""

        def _attempt() -> None:
            with locked(self.path, timeout_seconds=self.lock_timeout_seconds):
                self._write({})

        self._with_retry(_attempt, description="Clear all leases")
        logger.warning("Cleared all leases in %s", self.path)

    def is_expired(self, lease: Lease, *, now: datetime | None = None) -> bool:
        current = now if now is not None else self._clock()
        return current - lease.claimed_at > self.lease_ttl

    def _read(self) -> _Snapshot:
        try:
            raw = read_json_mapping(self.path)
        except CorruptDocumentError as error:
            logger.warning("Claim store is corrupted, treating as empty: %s", error)
            return _Snapshot(leases={}, needs_repair=True)
        except OSError as error:
            logger.warning("Claim store is unreadable, treating as empty: %s", error)
            return _Snapshot(leases={}, needs_repair=False)

        leases: dict[str, Lease] = {}
        needs_repair = False
        for key, value in raw.items():
            lease = _parse_lease(key, value)
            if lease is None:
                logger.warning("Ignoring malformed lease record %r", key)
                needs_repair = True
                continue
            leases[key] = lease
        return _Snapshot(leases=leases, needs_repair=needs_repair)

    def _write(self, leases: dict[str, Lease]) -> None:
        write_json_atomic(
            self.path,
            {key: _serialize_lease(lease) for key, lease in sorted(leases.items())},
        )

    def _with_retry(self, operation: Callable[[], T], *, description: str) -> T:
        last_error: BaseException | None = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return operation()
            except (Timeout, OSError) as error:
                last_error = error
                if attempt >= self.retry_attempts:
                    break
                delay = self.retry_base_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                    description,
                    attempt,
                    self.retry_attempts,
                    error,
                    delay,
                )
                self._sleep(delay)
        raise ClaimStoreError(
            f"{description} failed after {self.retry_attempts} attempt(s): {last_error}",
        ) from last_error


def _serialize_lease(lease: Lease) -> dict[str, Any]:
    return {
        "owner_id": lease.owner_id,
        "claimed_at": lease.claimed_at.isoformat(),
        "group": lease.group,
        "item": lease.item,
    }


def _parse_lease(key: str, value: object) -> Lease | None:
    if not isinstance(value, dict):
        return None
    owner_id = value.get("owner_id")
    claimed_at = value.get("claimed_at")
    group = value.get("group")
    item = value.get("item")
    if not isinstance(owner_id, str) or not owner_id:
        return None
    if not isinstance(claimed_at, str):
        return None
    if isinstance(group, bool) or not isinstance(group, int):
        return None
    if isinstance(item, bool) or not isinstance(item, int):
        return None
    if key != lease_key(group, item):
        return None
    try:
        parsed_at = parse_timestamp(claimed_at)
    except ValueError:
        return None
    return Lease(owner_id=owner_id, claimed_at=parsed_at, group=group, item=item)
