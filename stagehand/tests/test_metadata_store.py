"""Tests for the metadata store backends (stagehand/metadata/store.py).

Covers:
- read/write/exists for bytes and JSON
- compare-and-swap semantics (ANY, None, version match/mismatch)
- path normalisation
- directory listing
- on-disk backend: atomic writes, lock sidecars hidden from listings
"""

from __future__ import annotations

import threading

import pytest

from stagehand.core.errors import ConcurrentModification, ConsistencyViolation, ValidationError
from stagehand.metadata.store import (
    ANY,
    InMemoryMetadataStore,
    LocalMetadataStore,
    content_version,
    encode_json,
)


@pytest.fixture(params=["memory", "local"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryMetadataStore()
    return LocalMetadataStore(tmp_path / "metadata")


class TestReadWrite:
    def test_missing_file(self, any_store):
        assert any_store.get_file("environment/x/manifest.json") is None
        assert any_store.get_json_file("environment/x/manifest.json") is None
        assert any_store.exists("environment/x/manifest.json") is False

    def test_json_round_trip(self, any_store):
        doc = any_store.update_json("a/b.json", {"id": "testnet", "chainId": 1})
        loaded = any_store.get_json_file("a/b.json")
        assert loaded.contents == {"id": "testnet", "chainId": 1}
        assert loaded.version == doc.version
        assert any_store.exists("a/b.json")

    def test_bytes(self, any_store):
        any_store.update_file("raw.bin", b"\x00\x01")
        assert any_store.get_file("raw.bin").contents == b"\x00\x01"

    def test_invalid_json_is_a_consistency_violation(self, any_store):
        any_store.update_file("bad.json", b"{nope")
        with pytest.raises(ConsistencyViolation):
            any_store.get_json_file("bad.json")

    def test_version_is_content_hash(self, any_store):
        doc = any_store.update_json("v.json", [1, 2])
        assert doc.version == content_version(encode_json([1, 2]))

    @pytest.mark.parametrize("path", ["/etc/passwd", "../outside.json", "a/../../b.json"])
    def test_rejects_escaping_paths(self, any_store, path):
        with pytest.raises(ValidationError):
            any_store.update_json(path, {})


class TestCompareAndSwap:
    def test_create_only_when_absent(self, any_store):
        any_store.update_json("m.json", {"n": 1}, expected_version=None)
        with pytest.raises(ConcurrentModification):
            any_store.update_json("m.json", {"n": 2}, expected_version=None)

    def test_matching_version_succeeds(self, any_store):
        doc = any_store.update_json("m.json", {"n": 1})
        new = any_store.update_json("m.json", {"n": 2}, expected_version=doc.version)
        assert any_store.get_json_file("m.json").version == new.version

    def test_stale_version_fails_and_leaves_content(self, any_store):
        first = any_store.update_json("m.json", {"n": 1})
        any_store.update_json("m.json", {"n": 2}, expected_version=first.version)
        with pytest.raises(ConcurrentModification) as exc_info:
            any_store.update_json("m.json", {"n": 3}, expected_version=first.version)
        assert exc_info.value.path == "m.json"
        assert any_store.get_json_file("m.json").contents == {"n": 2}

    def test_any_overwrites(self, any_store):
        any_store.update_json("m.json", {"n": 1})
        any_store.update_json("m.json", {"n": 2}, expected_version=ANY)
        assert any_store.get_json_file("m.json").contents == {"n": 2}

    def test_racing_writers_exactly_one_wins(self, any_store):
        base = any_store.update_json("race.json", {"owner": None})
        winners, losers = [], []
        barrier = threading.Barrier(8)

        def writer(i: int) -> None:
            barrier.wait()
            try:
                any_store.update_json("race.json", {"owner": i}, expected_version=base.version)
                winners.append(i)
            except ConcurrentModification:
                losers.append(i)

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1
        assert len(losers) == 7
        assert any_store.get_json_file("race.json").contents == {"owner": winners[0]}


class TestListing:
    def test_list_directory(self, any_store):
        any_store.update_json("environment/testnet/manifest.json", {})
        any_store.update_json("environment/mainnet/manifest.json", {})
        any_store.update_json("environment/mainnet/deploys/deploys.json", {})
        assert any_store.list_directory("environment") == ["mainnet", "testnet"]

    def test_list_missing_directory(self, any_store):
        assert any_store.list_directory("nothing/here") == []


class TestLocalStore:
    def test_files_land_under_root(self, tmp_path):
        store = LocalMetadataStore(tmp_path)
        store.update_json("environment/testnet/manifest.json", {"id": "testnet"})
        path = tmp_path / "environment" / "testnet" / "manifest.json"
        assert path.read_text().endswith("\n")
        assert '"id": "testnet"' in path.read_text()

    def test_lock_sidecars_are_not_listed(self, tmp_path):
        store = LocalMetadataStore(tmp_path)
        store.update_json("dir/a.json", {})
        assert store.list_directory("dir") == ["a.json"]

    def test_no_temp_files_left_behind(self, tmp_path):
        store = LocalMetadataStore(tmp_path)
        store.update_json("dir/a.json", {"n": 1})
        store.update_json("dir/a.json", {"n": 2})
        leftovers = [p.name for p in (tmp_path / "dir").iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    def test_external_edit_is_detected(self, tmp_path):
        store = LocalMetadataStore(tmp_path)
        doc = store.update_json("m.json", {"n": 1})
        (tmp_path / "m.json").write_text('{"n": 99}\n')
        with pytest.raises(ConcurrentModification):
            store.update_json("m.json", {"n": 2}, expected_version=doc.version)
