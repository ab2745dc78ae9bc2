from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import cli
import main
from document_store import InMemoryDocumentStore
from spot_cache import MemoryKeyValueStorage, SpotCache
from spot_moderation import create_spot


@pytest.fixture(autouse=True)
def _reset_in_memory_state():
    main._STORE = InMemoryDocumentStore()
    main._CACHE = SpotCache(MemoryKeyValueStorage())


def test_nearby_lists_spots(capsys: pytest.CaptureFixture[str]):
    asyncio.run(create_spot(main._STORE, lat=-6.2, lng=106.816666, location_name="Kolak Bu Sri", created_by="u1"))

    assert cli.main(["nearby", "-6.2", "106.8167"]) == 0
    out = capsys.readouterr().out
    assert "Kolak Bu Sri [available]" in out


def test_nearby_with_no_results(capsys: pytest.CaptureFixture[str]):
    assert cli.main(["nearby", "10", "10", "--radius", "500"]) == 0
    assert "No spots nearby." in capsys.readouterr().out


def test_nearby_reports_failure(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]):
    async def broken_range_query(*args, **kwargs):
        raise ConnectionError("backend down")

    monkeypatch.setattr(main._STORE, "range_query", broken_range_query)
    assert cli.main(["nearby", "-6.2", "106.8"]) == 1
    assert "Could not load nearby results" in capsys.readouterr().err


def test_cache_commands(capsys: pytest.CaptureFixture[str]):
    asyncio.run(main._CACHE.set("spots_qqguw", []))
    assert cli.main(["sweep-cache"]) == 0
    assert "Evicted 0" in capsys.readouterr().out
    assert cli.main(["clear-cache"]) == 0
    assert asyncio.run(main._CACHE.storage.list_keys()) == []
