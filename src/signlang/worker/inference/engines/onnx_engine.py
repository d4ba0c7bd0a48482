"""
Support for ONNX models running on CPU or an onnxruntime execution provider
"""
import logging
from typing import Optional

from signlang.common.errors import LoadError
from signlang.common.model import AcceleratorPolicy, TensorSpec
from signlang.common.util import pin_shape
from signlang.worker.inference.engines.base_engine import InferenceModelEngine
import onnxruntime as ort
import numpy as np

logger = logging.getLogger(__name__)

CPU_PROVIDER = "CPUExecutionProvider"
ACCELERATOR_PROVIDERS = {"gpu": "CUDAExecutionProvider"}

ONNX_DTYPES = {
    "tensor(float)": np.float32,
    "tensor(float16)": np.float16,
    "tensor(double)": np.float64,
    "tensor(uint8)": np.uint8,
    "tensor(int8)": np.int8,
    "tensor(int32)": np.int32,
    "tensor(int64)": np.int64,
}

class OnnxEngine(InferenceModelEngine):
    """To load and run ONNX models."""

    def __init__(self, model_path: Optional[str] = None, *, model_content: Optional[bytes] = None,
                 accelerator: Optional[str] = None,
                 accelerator_policy: AcceleratorPolicy = AcceleratorPolicy.FALLBACK, **options):
        source = model_path or "<bytes>"
        providers = [CPU_PROVIDER]
        if accelerator and accelerator != "none":
            provider = ACCELERATOR_PROVIDERS.get(accelerator, accelerator)
            if provider in ort.get_available_providers():
                providers = [provider, CPU_PROVIDER]
            elif accelerator_policy == AcceleratorPolicy.FAIL_FAST:
                raise LoadError(source, f"accelerator {provider} is not available")
            else:
                logger.warning(f"Accelerator {provider} is not available, falling back to {CPU_PROVIDER}")

        sess_options = ort.SessionOptions()
        if options.get("num_threads"):
            sess_options.intra_op_num_threads = int(options["num_threads"])
        self.session = ort.InferenceSession(model_content if model_content is not None else model_path,
                                            sess_options=sess_options, providers=providers)

        self.inputs = self.session.get_inputs()
        self.outputs = self.session.get_outputs()

        self.input_names = [i.name for i in self.inputs]
        self.output_names = [o.name for o in self.outputs]

        self._input_specs = [self._to_spec(i, source) for i in self.inputs]
        self._output_specs = [self._to_spec(o, source) for o in self.outputs]
        # The session may still place every node on CPU
        self._used_accelerator = any(p != CPU_PROVIDER for p in self.session.get_providers())
        if len(providers) > 1 and not self._used_accelerator:
            if accelerator_policy == AcceleratorPolicy.FAIL_FAST:
                raise LoadError(source, f"session did not activate {providers[0]}")
            logger.warning(f"Session did not activate {providers[0]}, running on {CPU_PROVIDER}")

        self._validated_signature: Optional[dict[str, tuple[str, int]]] = None # name -> (dtype_str, ndim)

        logger.info(f"Loaded ONNX model. inputs={self.input_names} outputs={self.output_names} providers={self.session.get_providers()}")

    @staticmethod
    def _to_spec(node, source: str) -> TensorSpec:
        dtype = ONNX_DTYPES.get(node.type)
        if dtype is None:
            raise LoadError(source, f"unsupported tensor type {node.type} for {node.name}")
        return TensorSpec(name=node.name, shape=pin_shape(node.shape, source), dtype=np.dtype(dtype))

    @property
    def input_specs(self) -> list[TensorSpec]:
        return self._input_specs

    @property
    def output_specs(self) -> list[TensorSpec]:
        return self._output_specs

    @property
    def used_accelerator(self) -> bool:
        return self._used_accelerator

    # Core inference
    def infer_tensors(self, input_data: dict[str, np.ndarray]) -> dict[str, np.ndarray]:
        self._validate_or_lock_signature(input_data)
        output = self.session.run(self.output_names, input_data)
        return dict(zip(self.output_names, output))

    # Tensor validation
    def _validate_or_lock_signature(self, input_data: dict[str, np.ndarray]) -> None:
        # 1) name check
        for i in self.input_names:
            if i not in input_data:
                raise ValueError(f"Missing inputs: {i}. Required={self.input_names}")

        # 2) lock signature on first successful call (cheap checks later)
        if self._validated_signature is None:
            sig = {}
            for i in self.input_names:
                arr = input_data[i]
                sig[i] = (str(arr.dtype), arr.ndim)
            self._validated_signature = sig
            logger.info("Locked inputs signature: %s", self._validated_signature)
            return

        # 3) subsequent calls: quick check dtype/ndim
        for name, (dtype_str, ndim) in self._validated_signature.items():
            arr = input_data[name]
            if str(arr.dtype) != dtype_str or arr.ndim != ndim:
                raise ValueError(
                    f"Input signature mismatch for {name}: expect ({dtype_str}, ndim={ndim}), "
                    f"got ({arr.dtype}, ndim={arr.ndim})"
                )

    def close(self) -> None:
        # onnxruntime frees the native session once the last reference is gone
        self.session = None
        logger.info(f"Released ONNX session for inputs={self.input_names}")
