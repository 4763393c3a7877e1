"""Durable last-known state of every applied resource.

The state document is a single JSON file:

```json
{
  "version": 1,
  "serial": 12,
  "resources": {
    "google_compute_network.vpc": {
      "type": "google_compute_network",
      "name": "vpc",
      "provider": "google",
      "attributes": {"name": "gke-vpc", "id": "projects/p/global/networks/gke-vpc"},
      "desired": {"name": "gke-vpc"},
      "fingerprint": "sha256:...",
      "dependencies": [],
      "prevent_destroy": false,
      "updated_at": "2024-05-01T12:00:00+00:00"
    }
  }
}
```

CONCURRENCY:
- Every write is scoped to one resource address and taken under that
  address's asyncio.Lock, released on every exit path
- Flushes are serialized by a store-wide lock and written atomically
  (temporary file, fsync, os.replace), so a crash never leaves a torn file
- Readers work on snapshots; entries are immutable
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .config import MAX_STATE_FILE_SIZE_BYTES
from .references import ResourceAddress

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class StateError(Exception):
    """Raised when the state file cannot be read, parsed or written."""

    pass


@dataclass(frozen=True)
class StateEntry:
    """Last-known state of one resource.

    Attributes:
        address: Resource identity.
        provider: Provider tag the resource was applied with.
        attributes: Observed attributes returned by the provider.
        desired: Resolved desired attributes of the last successful apply.
        fingerprint: Content fingerprint of `desired`.
        dependencies: Upstream addresses at the time of the last apply.
        prevent_destroy: Protection flag at the time of the last apply.
        updated_at: ISO-8601 timestamp of the last write.
    """

    address: ResourceAddress
    provider: str
    attributes: dict[str, Any] = field(default_factory=dict)
    desired: dict[str, Any] | None = None
    fingerprint: str | None = None
    dependencies: tuple[ResourceAddress, ...] = ()
    prevent_destroy: bool = False
    updated_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    @property
    def baseline(self) -> dict[str, Any]:
        """Attributes the next diff compares against."""
        return self.desired if self.desired is not None else self.attributes

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.address.type,
            "name": self.address.name,
            "provider": self.provider,
            "attributes": self.attributes,
            "desired": self.desired,
            "fingerprint": self.fingerprint,
            "dependencies": [str(a) for a in self.dependencies],
            "prevent_destroy": self.prevent_destroy,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, key: str, data: Any) -> StateEntry:
        """Parse one persisted entry.

        Raises:
            StateError: If the entry is malformed.
        """
        if not isinstance(data, dict):
            raise StateError(f"State entry '{key}' must be an object")
        try:
            address = ResourceAddress(type=str(data["type"]), name=str(data["name"]))
            attributes = data.get("attributes", {})
            desired = data.get("desired")
            desired_ok = desired is None or isinstance(desired, dict)
            if not isinstance(attributes, dict) or not desired_ok:
                raise StateError(f"State entry '{key}' has non-object attributes")
            entry = cls(
                address=address,
                provider=str(data.get("provider") or address.type.split("_", 1)[0]),
                attributes=attributes,
                desired=desired,
                fingerprint=data.get("fingerprint"),
                dependencies=tuple(
                    ResourceAddress.parse(dep) for dep in data.get("dependencies") or []
                ),
                prevent_destroy=bool(data.get("prevent_destroy", False)),
                updated_at=str(data.get("updated_at") or ""),
            )
        except KeyError as e:
            raise StateError(f"State entry '{key}' is missing field {e}") from e
        except ValueError as e:
            raise StateError(f"State entry '{key}': {e}") from e

        if str(entry.address) != key:
            raise StateError(f"State entry key '{key}' does not match '{entry.address}'")
        return entry


class StateStore:
    """Shared store of last-known resource state.

    One store is passed explicitly to the reconciler; it is the only writer.
    A store without a path keeps state in memory.
    """

    def __init__(
        self,
        path: Path | None = None,
        entries: dict[ResourceAddress, StateEntry] | None = None,
        serial: int = 0,
    ) -> None:
        self._path = path
        self._entries: dict[ResourceAddress, StateEntry] = dict(entries or {})
        self._serial = serial
        self._locks: dict[ResourceAddress, asyncio.Lock] = {}
        self._flush_lock = asyncio.Lock()

    @classmethod
    def load(cls, path: Path) -> StateStore:
        """Load the store from disk; a missing file yields an empty store.

        Raises:
            StateError: If the file is unreadable, too large or malformed.
        """
        if not path.exists():
            logger.info("No state file found, starting empty", extra={"path": str(path)})
            return cls(path)

        try:
            size = path.stat().st_size
            if size > MAX_STATE_FILE_SIZE_BYTES:
                raise StateError(
                    f"State file too large: {size} bytes (max: {MAX_STATE_FILE_SIZE_BYTES})"
                )
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise StateError(f"Cannot read state file {path}: {e}") from e

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise StateError(f"Invalid JSON in state file {path}: {e}") from e

        if not isinstance(data, dict):
            raise StateError(f"State file {path} must contain a JSON object")

        version = data.get("version")
        if version != STATE_FORMAT_VERSION:
            raise StateError(
                f"Unsupported state format version {version!r} (expected {STATE_FORMAT_VERSION})"
            )

        resources = data.get("resources") or {}
        if not isinstance(resources, dict):
            raise StateError("'resources' must be an object")

        entries = {}
        for key, raw in resources.items():
            entry = StateEntry.from_dict(key, raw)
            entries[entry.address] = entry

        serial = data.get("serial", 0)
        if not isinstance(serial, int) or serial < 0:
            raise StateError(f"Invalid state serial: {serial!r}")

        logger.info(
            "Loaded state",
            extra={"path": str(path), "resources": len(entries), "serial": serial},
        )
        return cls(path, entries, serial)

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def serial(self) -> int:
        """Number of successful writes since the file was created."""
        return self._serial

    def __contains__(self, address: object) -> bool:
        return address in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[StateEntry]:
        for address in sorted(self._entries):
            yield self._entries[address]

    def get(self, address: ResourceAddress) -> StateEntry | None:
        return self._entries.get(address)

    def snapshot(self) -> dict[ResourceAddress, StateEntry]:
        """Point-in-time copy of all entries."""
        return dict(self._entries)

    def lock(self, address: ResourceAddress) -> asyncio.Lock:
        """Per-entry lock; writes to distinct addresses never contend."""
        lock = self._locks.get(address)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[address] = lock
        return lock

    async def put(self, entry: StateEntry) -> None:
        """Record the state of one resource and persist the store.

        Raises:
            StateError: If persisting fails; the in-memory entry is rolled back.
        """
        async with self.lock(entry.address):
            previous = self._entries.get(entry.address)
            self._entries[entry.address] = entry
            try:
                await self._flush()
            except StateError:
                if previous is None:
                    self._entries.pop(entry.address, None)
                else:
                    self._entries[entry.address] = previous
                raise

    async def remove(self, address: ResourceAddress) -> None:
        """Forget a destroyed resource and persist the store.

        Raises:
            StateError: If persisting fails; the entry is restored.
        """
        async with self.lock(address):
            previous = self._entries.pop(address, None)
            if previous is None:
                return
            try:
                await self._flush()
            except StateError:
                self._entries[address] = previous
                raise

    def to_document(self) -> dict[str, Any]:
        return {
            "version": STATE_FORMAT_VERSION,
            "serial": self._serial,
            "resources": {
                str(address): self._entries[address].to_dict()
                for address in sorted(self._entries)
            },
        }

    async def _flush(self) -> None:
        async with self._flush_lock:
            self._serial += 1
            if self._path is None:
                return
            content = json.dumps(self.to_document(), indent=2, sort_keys=False) + "\n"
            loop = asyncio.get_running_loop()
            try:
                await loop.run_in_executor(None, self._write, self._path, content)
            except OSError as e:
                self._serial -= 1
                raise StateError(f"Cannot write state file {self._path}: {e}") from e

    @staticmethod
    def _write(path: Path, content: str) -> None:
        tmp = path.with_name(path.name + ".tmp")
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
