"""Tests for the state store."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from converge.references import ResourceAddress
from converge.state import STATE_FORMAT_VERSION, StateEntry, StateError, StateStore

NETWORK = ResourceAddress("google_compute_network", "vpc")
SUBNET = ResourceAddress("google_compute_subnetwork", "nodes")


def _entry(address: ResourceAddress = NETWORK, **kwargs: object) -> StateEntry:
    defaults: dict[str, object] = {
        "provider": "google",
        "attributes": {"name": address.name, "id": f"id/{address.name}"},
        "desired": {"name": address.name},
        "fingerprint": "sha256:abc",
    }
    defaults.update(kwargs)
    return StateEntry(address=address, **defaults)  # type: ignore[arg-type]


class TestStateEntry:
    """Tests for StateEntry."""

    def test_baseline_prefers_desired(self) -> None:
        assert _entry().baseline == {"name": "vpc"}
        assert _entry(desired=None).baseline == {"name": "vpc", "id": "id/vpc"}

    def test_round_trip(self) -> None:
        entry = _entry(SUBNET, dependencies=(NETWORK,), prevent_destroy=True)

        parsed = StateEntry.from_dict(str(SUBNET), entry.to_dict())

        assert parsed == entry

    def test_from_dict_key_mismatch(self) -> None:
        with pytest.raises(StateError, match="does not match"):
            StateEntry.from_dict("google_compute_network.other", _entry().to_dict())

    @pytest.mark.parametrize(
        "data",
        [
            "not an object",
            {"name": "vpc"},
            {"type": "google_compute_network", "name": "vpc", "attributes": "text"},
            {"type": "google_compute_network", "name": "vpc", "dependencies": ["bad"]},
        ],
    )
    def test_from_dict_invalid(self, data: object) -> None:
        with pytest.raises(StateError):
            StateEntry.from_dict("google_compute_network.vpc", data)


class TestStateStoreLoad:
    """Tests for StateStore.load."""

    def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        store = StateStore.load(tmp_path / "state.json")

        assert len(store) == 0
        assert store.serial == 0

    def test_invalid_json(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text("{not json")

        with pytest.raises(StateError, match="Invalid JSON"):
            StateStore.load(path)

    def test_unsupported_version(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"version": 99, "resources": {}}))

        with pytest.raises(StateError, match="Unsupported state format version"):
            StateStore.load(path)

    def test_invalid_serial(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"version": STATE_FORMAT_VERSION, "serial": -1}))

        with pytest.raises(StateError, match="serial"):
            StateStore.load(path)

    def test_too_large(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("converge.state.MAX_STATE_FILE_SIZE_BYTES", 8)
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"version": STATE_FORMAT_VERSION, "resources": {}}))

        with pytest.raises(StateError, match="too large"):
            StateStore.load(path)


class TestStateStoreWrites:
    """Tests for put/remove persistence."""

    @pytest.mark.asyncio
    async def test_put_persists_and_reloads(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "state.json"
        store = StateStore(path)

        await store.put(_entry())
        await store.put(_entry(SUBNET, dependencies=(NETWORK,)))

        assert store.serial == 2
        assert not (tmp_path / "nested" / "state.json.tmp").exists()

        reloaded = StateStore.load(path)
        assert reloaded.serial == 2
        assert [str(e.address) for e in reloaded] == [str(NETWORK), str(SUBNET)]
        assert reloaded.get(SUBNET).dependencies == (NETWORK,)

        document = json.loads(path.read_text())
        assert document["version"] == STATE_FORMAT_VERSION
        assert list(document["resources"]) == [str(NETWORK), str(SUBNET)]

    @pytest.mark.asyncio
    async def test_remove(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        store = StateStore(path)
        await store.put(_entry())

        await store.remove(NETWORK)
        await store.remove(NETWORK)

        assert NETWORK not in store
        assert store.serial == 2
        assert StateStore.load(path).to_document()["resources"] == {}

    @pytest.mark.asyncio
    async def test_in_memory_store(self) -> None:
        store = StateStore()

        await store.put(_entry())

        assert store.get(NETWORK) is not None
        assert store.serial == 1

    @pytest.mark.asyncio
    async def test_failed_write_rolls_back(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that a write failure leaves the previous entry in place."""
        store = StateStore(tmp_path / "state.json")
        original = _entry()
        await store.put(original)

        def broken_write(path: Path, content: str) -> None:
            raise OSError("disk full")

        monkeypatch.setattr(StateStore, "_write", staticmethod(broken_write))

        with pytest.raises(StateError, match="disk full"):
            await store.put(_entry(attributes={"name": "changed"}))

        assert store.get(NETWORK) == original
        assert store.serial == 1
        assert not store.lock(NETWORK).locked()

    @pytest.mark.asyncio
    async def test_concurrent_writes_to_distinct_entries(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        store = StateStore(path)
        addresses = [ResourceAddress("google_service_account", f"sa{i}") for i in range(10)]

        await asyncio.gather(*(store.put(_entry(address)) for address in addresses))

        assert store.serial == 10
        assert len(StateStore.load(path)) == 10

    def test_snapshot_is_a_copy(self) -> None:
        store = StateStore(entries={NETWORK: _entry()})

        snapshot = store.snapshot()
        snapshot.clear()

        assert NETWORK in store
