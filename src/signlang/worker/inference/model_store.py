"""
Model Store: owns the lifecycle of loaded models.

Loading is idempotent per asset path, every handle is released exactly once.
"""
import importlib
import logging
import threading
from typing import Callable, Optional, Sequence

import numpy as np

from signlang.common.errors import LoadError, SignLangError, UseAfterUnloadError
from signlang.common.model import AcceleratorPolicy, TensorSpec
from signlang.worker.inference.assets import normalize_asset_path, open_asset
from signlang.worker.inference.engines.base_engine import InferenceModelEngine

logger = logging.getLogger(__name__)

# Suffix -> "module:class", imported on first use so a missing runtime only matters for its own format
DEFAULT_ENGINES: dict[str, str] = {
    ".onnx": "signlang.worker.inference.engines.onnx_engine:OnnxEngine",
    ".tflite": "signlang.worker.inference.engines.tflite_engine:TfliteEngine",
    ".lite": "signlang.worker.inference.engines.tflite_engine:TfliteEngine",
}

EngineFactory = Callable[..., InferenceModelEngine]


def _resolve_engine(target: str | EngineFactory) -> EngineFactory:
    if not isinstance(target, str):
        return target
    module_name, class_name = target.split(":")
    return getattr(importlib.import_module(module_name), class_name)


class ModelHandle:
    """Opaque reference to a loaded single-input, single-output model."""

    def __init__(self, asset_path: str, engine: InferenceModelEngine):
        self.asset_path = asset_path
        self._engine: Optional[InferenceModelEngine] = engine
        self.input_spec: TensorSpec = engine.input_specs[0]
        self.output_spec: TensorSpec = engine.output_specs[0]
        self.used_accelerator = engine.used_accelerator

    @property
    def released(self) -> bool:
        return self._engine is None

    def ensure_loaded(self) -> InferenceModelEngine:
        if self._engine is None:
            raise UseAfterUnloadError(self.asset_path)
        return self._engine

    def infer(self, input_array: np.ndarray) -> np.ndarray:
        engine = self.ensure_loaded()
        outputs = engine.infer_tensors({self.input_spec.name: input_array})
        return outputs[self.output_spec.name]

    def _release(self) -> None:
        engine = self.ensure_loaded()
        self._engine = None
        engine.close()

    def __repr__(self):
        state = "released" if self.released else "loaded"
        return f"ModelHandle({self.asset_path!r}, in={self.input_spec.shape}, out={self.output_spec.shape}, {state})"


class ModelStore:
    def __init__(self, accelerator: Optional[str] = None,
                 accelerator_policy: AcceleratorPolicy | str = AcceleratorPolicy.FALLBACK,
                 engines: Optional[dict[str, str | EngineFactory]] = None, **engine_options):
        self.accelerator = accelerator
        self.accelerator_policy = AcceleratorPolicy(accelerator_policy)
        self.engines = {**DEFAULT_ENGINES, **(engines or {})}
        self.engine_options = engine_options
        self._handles: dict[str, ModelHandle] = {}
        self._lock = threading.Lock()

    def load(self, asset_path: str, expected_input_shape: Optional[Sequence[int]] = None,
             expected_output_shape: Optional[Sequence[int]] = None) -> ModelHandle:
        key = normalize_asset_path(asset_path)
        with self._lock:
            handle = self._handles.get(key)
            if handle is not None:
                logger.debug(f"Model {asset_path} already loaded, reusing handle")
                self._check_shapes(handle, expected_input_shape, expected_output_shape)
                return handle

            asset = open_asset(asset_path)
            target = self.engines.get(asset.suffix)
            if target is None:
                raise LoadError(asset_path, f"unsupported model format '{asset.suffix}'")
            engine_cls = _resolve_engine(target)

            try:
                engine = engine_cls(asset.path, model_content=asset.content,
                                    accelerator=self.accelerator,
                                    accelerator_policy=self.accelerator_policy,
                                    **self.engine_options)
            except SignLangError:
                raise
            except Exception as e:
                raise LoadError(asset_path, f"runtime rejected the model: {e}") from e

            if len(engine.input_specs) != 1 or len(engine.output_specs) != 1:
                engine.close()
                raise LoadError(asset_path, f"expected 1 input and 1 output tensor, "
                                            f"got {len(engine.input_specs)} and {len(engine.output_specs)}")
            handle = ModelHandle(asset.key, engine)
            try:
                self._check_shapes(handle, expected_input_shape, expected_output_shape)
            except LoadError:
                handle._release()
                raise
            self._handles[key] = handle
            logger.info(f"Loaded {handle}")
            return handle

    @staticmethod
    def _check_shapes(handle: ModelHandle, expected_input_shape, expected_output_shape) -> None:
        for label, spec, expected in (("input", handle.input_spec, expected_input_shape),
                                      ("output", handle.output_spec, expected_output_shape)):
            if expected and tuple(expected) != spec.shape:
                raise LoadError(handle.asset_path, f"{label} shape {spec.shape} does not match expected {tuple(expected)}")

    def get(self, asset_path: str) -> Optional[ModelHandle]:
        with self._lock:
            return self._handles.get(normalize_asset_path(asset_path))

    def unload(self, handle: ModelHandle) -> None:
        with self._lock:
            handle._release()
            if self._handles.get(handle.asset_path) is handle:
                del self._handles[handle.asset_path]
        logger.info(f"Unloaded model {handle.asset_path}")

    def close(self) -> None:
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            handle._release()
            logger.info(f"Unloaded model {handle.asset_path}")

    def __len__(self):
        return len(self._handles)
