"""
worker/inference/engines/base_engine.py
Runtime backend interface. One instance owns one loaded model.
"""

from abc import ABC, abstractmethod
from typing import Optional
import numpy as np
from signlang.common.model import AcceleratorPolicy, TensorSpec


class InferenceModelEngine(ABC):
    @abstractmethod
    def __init__(self, model_path: Optional[str] = None, *, model_content: Optional[bytes] = None,
                 accelerator: Optional[str] = None,
                 accelerator_policy: AcceleratorPolicy = AcceleratorPolicy.FALLBACK, **options):
        pass

    @property
    @abstractmethod
    def input_specs(self) -> list[TensorSpec]:
        pass

    @property
    @abstractmethod
    def output_specs(self) -> list[TensorSpec]:
        pass

    @property
    @abstractmethod
    def used_accelerator(self) -> bool:
        pass

    @abstractmethod
    def infer_tensors(self, input_data: dict[str, np.ndarray]) -> dict[str, np.ndarray]:
        pass

    @abstractmethod
    def close(self) -> None:
        pass
