import json
from pathlib import Path

import pytest

from aiqueue.blob import LocalBlobStore
from aiqueue.config import QueueSettings
from aiqueue.models import PARAMS_POINTER_KEY, QueueEntry
from aiqueue.offload import PayloadOffloader


@pytest.mark.asyncio
async def test_local_blob_store_roundtrip_with_metadata(blob_store: LocalBlobStore):
    await blob_store.put("queue/params/a.json", {"x": 1}, metadata={"customTime": "now"})

    assert await blob_store.get("queue/params/a.json") == {"x": 1}
    sidecar = blob_store.root / "queue/params/a.json.meta.json"
    assert json.loads(sidecar.read_text()) == {"customTime": "now"}

    await blob_store.delete("queue/params/a.json")
    assert not (blob_store.root / "queue/params/a.json").exists()
    assert not sidecar.exists()


@pytest.mark.asyncio
async def test_local_blob_store_rejects_escaping_paths(blob_store: LocalBlobStore):
    with pytest.raises(ValueError):
        await blob_store.put("../outside.json", {"x": 1})


@pytest.mark.asyncio
async def test_params_offloaded_above_threshold(offloader: PayloadOffloader, blob_store):
    params = {"prompt": "draw a castle", "entryType": "scene"}

    path = await offloader.store_large_params(params)

    assert path is not None
    assert path.startswith("queue/params/") and path.endswith(".json")
    assert await blob_store.get(path) == params
    metadata = json.loads((blob_store.root / f"{path}.meta.json").read_text())
    assert "customTime" in metadata

    entry = QueueEntry(type="test", params={PARAMS_POINTER_KEY: path, "entryType": "scene"})
    assert await offloader.get_params(entry) == params

    await offloader.delete_params(entry)
    assert not (blob_store.root / path).exists()


@pytest.mark.asyncio
async def test_params_kept_inline_below_threshold(blob_store: LocalBlobStore):
    offloader = PayloadOffloader(blob_store=blob_store, threshold=1000)
    params = {"prompt": "short"}

    assert await offloader.store_large_params(params) is None
    entry = QueueEntry(type="test", params=params)
    assert await offloader.get_params(entry) == params


@pytest.mark.asyncio
async def test_get_params_unwraps_nested_params(offloader: PayloadOffloader):
    entry = QueueEntry(type="test", params={"params": {"prompt": "inner"}, "model": "m"})
    assert await offloader.get_params(entry) == {"prompt": "inner"}


@pytest.mark.asyncio
async def test_results_are_read_then_deleted(offloader: PayloadOffloader, blob_store):
    path = await offloader.store_large_result({"text": "hello"})

    assert path is not None and path.startswith("queue/results/")
    assert await offloader.get_and_delete_result(path) == {"text": "hello"}
    assert not Path(blob_store.root / path).exists()


@pytest.mark.asyncio
async def test_offloader_from_settings(tmp_path: Path):
    settings = QueueSettings(storage_threshold=50, blob_root=tmp_path / "configured")
    offloader = PayloadOffloader.from_settings(settings)

    assert offloader.threshold == 50
    assert await offloader.store_large_params({"prompt": "short"}) is None
    path = await offloader.store_large_params({"prompt": "x" * 100})
    assert (tmp_path / "configured" / path).exists()
