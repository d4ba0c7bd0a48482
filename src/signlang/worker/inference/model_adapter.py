"""
Model adapters turn request payloads into input tensors and output scores into ranked predictions.
Subclass ModelAdapter for a custom model; a standalone adapter file loaded with
common.util.load_adapter must expose its class under the name `ModelAdapter`.
See worker/inference/models/sign_language/sign_language_adapter.py for an implementation.
"""

import logging
import numpy as np
from typing import Any, Optional, Sequence
from scipy import special

from signlang.common.model import Prediction, RawItem, TensorSpec

logger = logging.getLogger(__name__)


def load_labels(labels_path: str) -> list[str]:
    with open(labels_path, 'r', encoding='utf-8') as f:
        labels = [line.strip() for line in f if line.strip()]
    if not labels:
        raise ValueError(f"Labels file {labels_path} is empty")
    return labels


class ModelAdapter:
    """
    - preprocess: payload (feature vector, array or raw items) -> float32 array of the input shape
    - postprocess: real-valued output scores -> predictions sorted by confidence
    - generate_dummy_inputs: random input for compute-only benchmarking
    """
    def __init__(self, labels: Optional[Sequence[str]] = None, top_k: int = 0):
        self.labels = list(labels) if labels else []
        self.top_k = top_k

    def preprocess(self, features: Any, input_spec: TensorSpec, meta: Optional[dict[str, Any]] = None) -> np.ndarray:
        if isinstance(features, RawItem):
            features = [features]
        if isinstance(features, list) and features and isinstance(features[0], RawItem):
            return self.preprocess_items(features, input_spec, meta)
        data = np.asarray(features, dtype=np.float32)
        if data.size != input_spec.size:
            raise ValueError(f"Expected {input_spec.size} feature values for input {input_spec.shape}, got {data.size}")
        return data.reshape(input_spec.shape)

    def preprocess_items(self, items: list[RawItem], input_spec: TensorSpec, meta: Optional[dict[str, Any]] = None) -> np.ndarray:
        raise ValueError(f"{type(self).__name__} does not accept raw items")

    def postprocess(self, scores: np.ndarray, meta: Optional[dict[str, Any]] = None,
                    output_spec: Optional[TensorSpec] = None) -> list[Prediction]:
        scores = np.asarray(scores, dtype=np.float64).reshape(-1)
        if self._is_distribution(scores, self._tolerance(scores, output_spec)):
            # Quantized probabilities lose up to one step per class
            scores = scores / scores.sum()
        else:
            scores = special.softmax(scores)
        order = np.argsort(-scores, kind="stable")
        if self.top_k:
            order = order[:self.top_k]
        return [Prediction(label=self.label_for(int(i)), confidence=float(scores[i])) for i in order]

    @staticmethod
    def _tolerance(scores: np.ndarray, output_spec: Optional[TensorSpec]) -> float:
        if output_spec is not None and output_spec.quantization is not None:
            return max(1e-3, scores.size * output_spec.quantization.scale)
        return 1e-3

    @staticmethod
    def _is_distribution(scores: np.ndarray, atol: float = 1e-3) -> bool:
        return bool(np.all(scores >= 0.0) and scores.sum() > 0.0 and abs(scores.sum() - 1.0) <= atol)

    def label_for(self, index: int) -> str:
        if index < len(self.labels):
            return self.labels[index]
        return f"class_{index}"

    def generate_dummy_inputs(self, input_spec: TensorSpec, seed: int = 42) -> np.ndarray:
        rng = np.random.default_rng(seed)
        return rng.random(input_spec.shape, dtype=np.float32)
