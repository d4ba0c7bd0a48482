import zipfile

import numpy as np
import pytest

from conftest import FakeEngine
from signlang.common.errors import LoadError, UseAfterUnloadError
from signlang.worker.inference.model_store import ModelStore


@pytest.fixture
def registry():
    return []


@pytest.fixture
def store(registry):
    store = ModelStore(engines={".fake": FakeEngine}, registry=registry)
    yield store
    store.close()


def test_load_returns_handle_with_specs(store, fake_model_path):
    handle = store.load(str(fake_model_path))
    assert handle.input_spec.shape == (1, 4)
    assert handle.output_spec.shape == (1, 3)
    assert not handle.released
    assert not handle.used_accelerator


def test_load_is_idempotent(store, registry, fake_model_path):
    first = store.load(str(fake_model_path))
    second = store.load(str(fake_model_path))
    assert first is second
    assert len(registry) == 1
    assert len(store) == 1


def test_unload_then_reload(store, registry, fake_model_path):
    handle = store.load(str(fake_model_path))
    store.unload(handle)
    assert handle.released
    assert registry[0].closed
    assert store.get(str(fake_model_path)) is None

    reloaded = store.load(str(fake_model_path))
    assert reloaded is not handle
    assert reloaded.infer(np.zeros((1, 4), dtype=np.float32)).shape == (1, 3)


def test_use_after_unload(store, fake_model_path):
    handle = store.load(str(fake_model_path))
    store.unload(handle)
    with pytest.raises(UseAfterUnloadError):
        handle.infer(np.zeros((1, 4), dtype=np.float32))
    with pytest.raises(UseAfterUnloadError):
        store.unload(handle)


def test_missing_asset(store, tmp_path):
    with pytest.raises(LoadError):
        store.load(str(tmp_path / "missing.fake"))


def test_corrupt_asset(store, registry, tmp_path):
    path = tmp_path / "corrupt.fake"
    path.write_bytes(b"corrupt data")
    with pytest.raises(LoadError) as exc_info:
        store.load(str(path))
    assert "flatbuffer" in exc_info.value.reason
    assert registry == []
    assert len(store) == 0


def test_unsupported_format(store, tmp_path):
    path = tmp_path / "model.pt"
    path.write_bytes(b"weights")
    with pytest.raises(LoadError):
        store.load(str(path))


def test_shape_mismatch_is_not_cached(store, registry, fake_model_path):
    with pytest.raises(LoadError):
        store.load(str(fake_model_path), expected_output_shape=[1, 26])
    assert store.get(str(fake_model_path)) is None
    assert registry[0].closed
    assert store.load(str(fake_model_path), expected_input_shape=[1, 4], expected_output_shape=[1, 3])


def test_accelerator_flag(registry, fake_model_path):
    store = ModelStore(accelerator="gpu", engines={".fake": FakeEngine}, registry=registry)
    assert store.load(str(fake_model_path)).used_accelerator
    store.close()
    assert registry[0].closed


def test_load_from_uncompressed_archive_entry(store, tmp_path):
    archive = tmp_path / "app-release.apk"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr(zipfile.ZipInfo("assets/models/sign.fake"), b"fake-model", compress_type=zipfile.ZIP_STORED)
    handle = store.load(f"{archive}!/assets/models/sign.fake")
    assert handle.input_spec.shape == (1, 4)
    assert store.load(f"{archive}!/assets/models/sign.fake") is handle


def test_compressed_archive_entry_is_rejected(tmp_path):
    store = ModelStore(engines={".fake": FakeEngine, ".tflite": FakeEngine})
    archive = tmp_path / "app-release.apk"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("assets/models/sign.tflite", b"fake-model", compress_type=zipfile.ZIP_DEFLATED)
    with pytest.raises(LoadError) as exc_info:
        store.load(f"{archive}!/assets/models/sign.tflite")
    assert "uncompressed" in exc_info.value.reason


def test_missing_archive_entry(store, tmp_path):
    archive = tmp_path / "app-release.apk"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("assets/other.txt", b"x")
    with pytest.raises(LoadError):
        store.load(f"{archive}!/assets/models/sign.fake")
