"""
Support for TensorFlow Lite models through the LiteRT interpreter, optionally on the GPU delegate
"""
import logging
from typing import Optional

from signlang.common.errors import LoadError
from signlang.common.model import AcceleratorPolicy, QuantizationParams, TensorSpec
from signlang.common.util import pin_shape
from signlang.worker.inference.engines.base_engine import InferenceModelEngine
from ai_edge_litert.interpreter import Interpreter, load_delegate
import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_GPU_DELEGATE = "libtensorflowlite_gpu_delegate.so"

class TfliteEngine(InferenceModelEngine):
    """To load and run quantized .tflite models."""

    def __init__(self, model_path: Optional[str] = None, *, model_content: Optional[bytes] = None,
                 accelerator: Optional[str] = None,
                 accelerator_policy: AcceleratorPolicy = AcceleratorPolicy.FALLBACK, **options):
        source = model_path or "<bytes>"
        delegates = []
        if accelerator == "gpu":
            library = options.get("gpu_delegate_library") or DEFAULT_GPU_DELEGATE
            try:
                delegates.append(load_delegate(library))
                logger.info(f"Loaded GPU delegate {library}")
            except (ValueError, OSError) as e:
                if accelerator_policy == AcceleratorPolicy.FAIL_FAST:
                    raise LoadError(source, f"GPU delegate {library} is not available: {e}") from e
                logger.warning(f"GPU delegate {library} is not available, falling back to CPU: {e}")
        elif accelerator and accelerator != "none":
            raise LoadError(source, f"unsupported accelerator for TFLite: {accelerator}")

        self.interpreter = Interpreter(
            model_path=model_path if model_content is None else None,
            model_content=model_content,
            experimental_delegates=delegates or None,
            num_threads=options.get("num_threads"),
        )
        self.interpreter.allocate_tensors()
        self._used_accelerator = bool(delegates)

        self.input_details = self.interpreter.get_input_details()
        self.output_details = self.interpreter.get_output_details()
        self._input_specs = [self._to_spec(d, source) for d in self.input_details]
        self._output_specs = [self._to_spec(d, source) for d in self.output_details]

        logger.info(f"Loaded TFLite model. inputs={[s.name for s in self._input_specs]} "
                    f"outputs={[s.name for s in self._output_specs]} gpu={self._used_accelerator}")

    @staticmethod
    def _to_spec(detail: dict, source: str) -> TensorSpec:
        scale, zero_point = detail.get("quantization", (0.0, 0))
        quantization = QuantizationParams(float(scale), int(zero_point)) if scale else None
        return TensorSpec(
            name=detail["name"],
            shape=pin_shape(detail["shape"], source),
            dtype=np.dtype(detail["dtype"]),
            quantization=quantization,
        )

    @property
    def input_specs(self) -> list[TensorSpec]:
        return self._input_specs

    @property
    def output_specs(self) -> list[TensorSpec]:
        return self._output_specs

    @property
    def used_accelerator(self) -> bool:
        return self._used_accelerator

    def infer_tensors(self, input_data: dict[str, np.ndarray]) -> dict[str, np.ndarray]:
        for detail in self.input_details:
            if detail["name"] not in input_data:
                raise ValueError(f"Missing inputs: {detail['name']}. Required={[d['name'] for d in self.input_details]}")
            self.interpreter.set_tensor(detail["index"], input_data[detail["name"]])
        self.interpreter.invoke()
        return {d["name"]: self.interpreter.get_tensor(d["index"]) for d in self.output_details}

    def close(self) -> None:
        self.interpreter = None
        logger.info("Released TFLite interpreter")
