from dataclasses import dataclass
from enum import Enum, unique
from typing import Any, Literal, Optional

import numpy as np
from pydantic import BaseModel


@unique
class RequestStatus(str, Enum):
    QUEUED: str = "queued"
    RUNNING: str = "running"
    COMPLETED: str = "completed"
    FAILED: str = "failed"
    CANCELLED: str = "cancelled"


@unique
class BufferRole(str, Enum):
    INPUT: str = "input"
    OUTPUT: str = "output"


@unique
class AcceleratorPolicy(str, Enum):
    FALLBACK: str = "fallback" # Run on the general-purpose backend when the accelerator is unavailable
    FAIL_FAST: str = "fail_fast" # Refuse to load instead


@dataclass(frozen=True)
class QuantizationParams:
    scale: float
    zero_point: int

    def quantize(self, values: np.ndarray, dtype: np.dtype) -> np.ndarray:
        info = np.iinfo(dtype)
        q = np.round(values / self.scale + self.zero_point)
        return np.clip(q, info.min, info.max).astype(dtype)

    def dequantize(self, values: np.ndarray) -> np.ndarray:
        return (values.astype(np.float32) - self.zero_point) * np.float32(self.scale)


@dataclass(frozen=True)
class TensorSpec:
    name: str
    shape: tuple[int, ...]
    dtype: np.dtype
    quantization: Optional[QuantizationParams] = None

    @property
    def size(self) -> int:
        return int(np.prod(self.shape))


# Raw items accepted by model adapters
RawItemType = Literal["image_bytes", "image_path", "features"]

@dataclass
class RawItem:
    type: RawItemType
    data: Any
    mime: Optional[str] = None


class Prediction(BaseModel):
    label: str
    confidence: float


class ClassificationResult(BaseModel):
    request_id: str
    status: RequestStatus
    predictions: list[Prediction] = []
    used_accelerator: bool = False
    latency_ms: Optional[float] = None
    error: Optional[str] = None

    @property
    def top(self) -> Optional[Prediction]:
        return self.predictions[0] if self.predictions else None


# Worker data API payloads
class ClassifyRequest(BaseModel):
    request_id: Optional[str] = None
    features: Optional[list[float]] = None # Flattened feature vector (e.g. hand landmarks)
    image_base64: Optional[str] = None # Encoded camera frame
    wait: bool = True # False: return immediately with the request id

class SubmitResponse(BaseModel):
    request_id: str
    status: RequestStatus

class CancelResponse(BaseModel):
    request_id: str
    cancelled: bool

class HealthResponse(BaseModel):
    status: str
    model: str
    input_shape: list[int]
    output_shape: list[int]
    quantized: bool
    used_accelerator: bool
    labels: int
    pending: int
