"""
worker/inference/inference_engine.py
Single-shot classification over a loaded model, using pooled tensor buffers.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import numpy as np

from signlang.common.errors import InferenceError, SignLangError
from signlang.common.model import BufferRole, Prediction
from signlang.worker.inference.buffer_pool import TensorBuffer, TensorBufferPool
from signlang.worker.inference.model_adapter import ModelAdapter
from signlang.worker.inference.model_store import ModelHandle

logger = logging.getLogger(__name__)


@dataclass
class InferenceOutput:
    buffer: TensorBuffer # Borrowed from the pool, the caller must release it
    used_accelerator: bool
    latency_ms: float


@dataclass
class PredictionOutcome:
    predictions: list[Prediction]
    used_accelerator: bool
    latency_ms: float


class InferenceEngine:
    def __init__(self, pool: TensorBufferPool, adapter: Optional[ModelAdapter] = None):
        self.pool = pool
        self.adapter = adapter or ModelAdapter()

    def classify(self, handle: ModelHandle, input_buffer: TensorBuffer) -> InferenceOutput:
        """
        Run one forward pass of `handle` on `input_buffer`.
        The returned output buffer is owned by the caller until released back to the pool.
        """
        handle.ensure_loaded()
        if input_buffer.shape != handle.input_spec.shape:
            raise InferenceError(f"Input buffer shape {input_buffer.shape} does not match model input "
                                 f"{handle.input_spec.shape}", handle.asset_path)

        output_buffer = self.pool.acquire(handle.output_spec.shape, BufferRole.OUTPUT)
        t0 = time.perf_counter()
        try:
            result = handle.infer(input_buffer.array)
            if result.size != output_buffer.array.size:
                raise ValueError(f"Runtime produced {result.shape}, expected {output_buffer.shape}")
            np.copyto(output_buffer.array, result.reshape(output_buffer.shape), casting="unsafe")
        except SignLangError:
            self.pool.release(output_buffer)
            raise
        except Exception as e:
            self.pool.release(output_buffer)
            logger.error(f"Inference failed on {handle.asset_path}: {e}")
            raise InferenceError(f"Inference failed: {e}", handle.asset_path) from e
        latency_ms = (time.perf_counter() - t0) * 1000.0
        logger.debug(f"Forward pass took {latency_ms:.2f} ms (accelerator={handle.used_accelerator})")
        return InferenceOutput(output_buffer, handle.used_accelerator, latency_ms)

    def predict(self, handle: ModelHandle, features: Any, meta: Optional[dict[str, Any]] = None) -> PredictionOutcome:
        """Pre-process, classify and post-process one request."""
        try:
            data = self.adapter.preprocess(features, handle.input_spec, meta)
        except Exception as e:
            raise InferenceError(f"Invalid features: {type(e).__name__}: {e}", handle.asset_path) from e

        with self.pool.borrow(BufferRole.INPUT) as input_buffer:
            try:
                input_buffer.write(data)
            except Exception as e:
                raise InferenceError(f"Invalid features: {type(e).__name__}: {e}", handle.asset_path) from e
            output = self.classify(handle, input_buffer)
        try:
            scores = output.buffer.read()
        finally:
            self.pool.release(output.buffer)
        predictions = self.adapter.postprocess(scores, meta, output_spec=handle.output_spec)
        return PredictionOutcome(predictions, output.used_accelerator, output.latency_ms)

    def warm_up(self, handle: ModelHandle, iterations: int = 1, seed: int = 42) -> float:
        """Run dummy inputs through the model, returns the average latency in ms."""
        total = 0.0
        for i in range(iterations):
            outcome = self.predict(handle, self.adapter.generate_dummy_inputs(handle.input_spec, seed=seed + i))
            total += outcome.latency_ms
        average = total / max(iterations, 1)
        logger.info(f"Warm-up finished: {iterations} iterations, {average:.2f} ms average")
        return average
