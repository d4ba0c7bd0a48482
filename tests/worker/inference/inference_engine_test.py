import numpy as np
import pytest

from conftest import FakeEngine
from signlang.common.errors import InferenceError, PoolExhaustedError, UseAfterUnloadError
from signlang.common.model import BufferRole, QuantizationParams, TensorSpec
from signlang.worker.inference.buffer_pool import TensorBufferPool
from signlang.worker.inference.inference_engine import InferenceEngine
from signlang.worker.inference.model_adapter import ModelAdapter
from signlang.worker.inference.model_store import ModelStore
from signlang.worker.inference.models.sign_language.sign_language_adapter import SignLanguageAdapter


@pytest.fixture
def store():
    store = ModelStore(engines={".fake": FakeEngine})
    yield store
    store.close()


@pytest.fixture
def handle(store, fake_model_path):
    return store.load(str(fake_model_path))


@pytest.fixture
def engine(handle):
    return InferenceEngine(TensorBufferPool.for_model(handle), ModelAdapter(["HELLO", "THANKS", "YES"]))


def test_classify_transfers_output_buffer(engine, handle):
    with engine.pool.borrow(BufferRole.INPUT) as input_buffer:
        input_buffer.write([1, 0, 0, 0])
        output = engine.classify(handle, input_buffer)
    assert output.buffer.role == BufferRole.OUTPUT
    assert engine.pool.in_use(BufferRole.OUTPUT) == 1
    np.testing.assert_allclose(output.buffer.read(), [[0.7, 0.2, 0.1]], rtol=1e-6)
    assert not output.used_accelerator
    engine.pool.release(output.buffer)
    assert engine.pool.in_use() == 0


def test_classify_needs_free_output_buffer(engine, handle):
    held = [engine.pool.acquire((1, 3)) for _ in range(2)]
    with engine.pool.borrow(BufferRole.INPUT) as input_buffer:
        with pytest.raises(PoolExhaustedError):
            engine.classify(handle, input_buffer)
    for buffer in held:
        engine.pool.release(buffer)


def test_runtime_failure_returns_output_buffer(engine, handle):
    with engine.pool.borrow(BufferRole.INPUT) as input_buffer:
        input_buffer.write([-1, 0, 0, 0])
        with pytest.raises(InferenceError):
            engine.classify(handle, input_buffer)
    assert engine.pool.in_use() == 0


def test_classify_after_unload(engine, handle, store):
    store.unload(handle)
    with engine.pool.borrow(BufferRole.INPUT) as input_buffer:
        with pytest.raises(UseAfterUnloadError):
            engine.classify(handle, input_buffer)
    assert engine.pool.in_use() == 0


def test_predict_sorts_by_confidence(engine, handle):
    outcome = engine.predict(handle, [1.0, 0.0, 0.0, 0.0])
    assert [p.label for p in outcome.predictions] == ["HELLO", "THANKS", "YES"]
    confidences = [p.confidence for p in outcome.predictions]
    assert confidences == sorted(confidences, reverse=True)
    assert sum(confidences) == pytest.approx(1.0, abs=1e-5)
    assert engine.pool.in_use() == 0


def test_predict_rejects_bad_features(engine, handle):
    with pytest.raises(InferenceError):
        engine.predict(handle, [1.0, 2.0])
    assert engine.pool.in_use() == 0


def test_warm_up(engine, handle, store):
    assert engine.warm_up(handle, iterations=3) >= 0.0


def test_predict_with_onnx_model(onnx_model_path):
    store = ModelStore()
    handle = store.load(str(onnx_model_path), expected_input_shape=[1, 4], expected_output_shape=[1, 3])
    engine = InferenceEngine(TensorBufferPool.for_model(handle), ModelAdapter(["HELLO", "THANKS", "YES"], top_k=2))
    outcome = engine.predict(handle, np.array([0.0, 3.0, 1.0, 9.0], dtype=np.float32))
    assert [p.label for p in outcome.predictions] == ["THANKS", "YES"]
    assert outcome.predictions[0].confidence > 0.8
    store.close()


class QuantizedEngine(FakeEngine):
    """uint8 softmax head over 26 letters, as exported by the TFLite converter."""
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._output = TensorSpec("probabilities", (1, 26), np.dtype(np.uint8), QuantizationParams(1 / 256, 0))

    def infer_tensors(self, input_data):
        scores = np.zeros((1, 26), dtype=np.uint8)
        scores[0, 3] = 255
        scores[0, 7] = 1
        return {"probabilities": scores}


def test_predict_quantized_softmax_keeps_confidences(fake_model_path):
    path = fake_model_path.with_suffix(".qfake")
    path.write_bytes(b"quantized")
    store = ModelStore(engines={".qfake": QuantizedEngine})
    handle = store.load(str(path))
    engine = InferenceEngine(TensorBufferPool.for_model(handle), SignLanguageAdapter())
    outcome = engine.predict(handle, [0.0, 0.0, 0.0, 0.0])
    assert outcome.predictions[0].label == "D"
    assert outcome.predictions[0].confidence > 0.99
    assert outcome.predictions[1].label == "H"
    assert sum(p.confidence for p in outcome.predictions) == pytest.approx(1.0, abs=1e-6)
    store.close()


def test_predict_tags_every_preprocess_failure(engine, handle):
    with pytest.raises(InferenceError) as exc_info:
        engine.predict(handle, {"left": [1.0, 2.0]})
    assert "TypeError" in str(exc_info.value)
    assert engine.pool.in_use() == 0


def test_predict_tags_buffer_write_failure(handle):
    class ShortAdapter(ModelAdapter):
        def preprocess(self, features, input_spec, meta=None):
            return np.zeros(2, dtype=np.float32)

    engine = InferenceEngine(TensorBufferPool.for_model(handle), ShortAdapter())
    with pytest.raises(InferenceError):
        engine.predict(handle, [1.0, 0.0, 0.0, 0.0])
    assert engine.pool.in_use() == 0
