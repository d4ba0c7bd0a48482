import threading
from typing import Optional

import numpy as np
import pytest

from signlang.common.model import AcceleratorPolicy, TensorSpec
from signlang.worker.inference.engines.base_engine import InferenceModelEngine

LABELS = ["HELLO", "THANKS", "YES"]


class FakeEngine(InferenceModelEngine):
    """
    Controllable runtime for dispatcher tests.
    The first feature value identifies the request; a negative one makes the forward pass fail.
    Forward passes block while `gate` is cleared.
    """
    def __init__(self, model_path: Optional[str] = None, *, model_content: Optional[bytes] = None,
                 accelerator: Optional[str] = None,
                 accelerator_policy: AcceleratorPolicy = AcceleratorPolicy.FALLBACK, **options):
        content = model_content
        if content is None:
            with open(model_path, "rb") as f:
                content = f.read()
        if content.startswith(b"corrupt"):
            raise RuntimeError("flatbuffer verification failed")
        self.gate = threading.Event()
        self.gate.set()
        self.started = threading.Event()
        self.calls: list[float] = []
        self.active = 0
        self.max_active = 0
        self.closed = False
        self._lock = threading.Lock()
        self._used_accelerator = accelerator == "gpu"
        self._input = TensorSpec("features", (1, 4), np.dtype(np.float32))
        self._output = TensorSpec("probabilities", (1, 3), np.dtype(np.float32))
        options.get("registry", []).append(self)

    @property
    def input_specs(self):
        return [self._input]

    @property
    def output_specs(self):
        return [self._output]

    @property
    def used_accelerator(self):
        return self._used_accelerator

    def infer_tensors(self, input_data):
        x = input_data["features"].reshape(-1)
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.calls.append(float(x[0]))
        self.started.set()
        try:
            self.gate.wait(5)
            if x[0] < 0:
                raise RuntimeError("delegate returned an error")
            return {"probabilities": np.array([[0.7, 0.2, 0.1]], dtype=np.float32)}
        finally:
            with self._lock:
                self.active -= 1

    def close(self):
        self.closed = True


@pytest.fixture
def fake_model_path(tmp_path):
    path = tmp_path / "sign.fake"
    path.write_bytes(b"fake-model")
    return path


@pytest.fixture
def onnx_model_path(tmp_path):
    """A 4-feature, 3-class softmax classifier: logits are the first three features."""
    onnx = pytest.importorskip("onnx")
    from onnx import TensorProto, helper, numpy_helper

    weights = np.array([[1, 0, 0], [0, 1, 0], [0, 0, 1], [0, 0, 0]], dtype=np.float32)
    graph = helper.make_graph(
        [
            helper.make_node("MatMul", ["features", "W"], ["logits"]),
            helper.make_node("Softmax", ["logits"], ["probabilities"], axis=-1),
        ],
        "sign_classifier",
        [helper.make_tensor_value_info("features", TensorProto.FLOAT, [1, 4])],
        [helper.make_tensor_value_info("probabilities", TensorProto.FLOAT, [1, 3])],
        [numpy_helper.from_array(weights, name="W")],
    )
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 13)])
    model.ir_version = 8
    path = tmp_path / "sign_classifier.onnx"
    onnx.save(model, str(path))
    return path


@pytest.fixture
def labels_path(tmp_path):
    path = tmp_path / "labels.txt"
    path.write_text("\n".join(LABELS) + "\n")
    return path
