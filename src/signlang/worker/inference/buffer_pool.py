"""Pre-allocated tensor buffers shared across inference calls."""

import logging
import threading
from collections import deque
from contextlib import contextmanager
from typing import Iterator, Optional, Sequence

import numpy as np

from signlang.common.errors import PoolExhaustedError, ShutdownError
from signlang.common.model import BufferRole, QuantizationParams, TensorSpec

logger = logging.getLogger(__name__)


class TensorBuffer:
    """Fixed-size array matching one tensor spec. Owned by its pool."""

    def __init__(self, pool: "TensorBufferPool", role: BufferRole, index: int, spec: TensorSpec):
        self.pool = pool
        self.role = role
        self.index = index
        self.spec = spec
        self.array = np.zeros(spec.shape, dtype=spec.dtype)

    @property
    def shape(self) -> tuple[int, ...]:
        return self.array.shape

    def write(self, values, quantization: Optional[QuantizationParams] = None) -> None:
        """Copy real-valued data in, quantizing when the tensor is quantized."""
        data = np.asarray(values, dtype=np.float32)
        if data.size != self.array.size:
            raise ValueError(f"Expected {self.array.size} values for shape {self.shape}, got {data.size}")
        data = data.reshape(self.shape)
        quantization = quantization or self.spec.quantization
        if quantization is not None and np.issubdtype(self.array.dtype, np.integer):
            data = quantization.quantize(data, self.array.dtype)
        np.copyto(self.array, data, casting="unsafe")

    def read(self, quantization: Optional[QuantizationParams] = None) -> np.ndarray:
        """Return a real-valued float32 copy of the contents."""
        quantization = quantization or self.spec.quantization
        if quantization is not None and np.issubdtype(self.array.dtype, np.integer):
            return quantization.dequantize(self.array)
        return self.array.astype(np.float32)

    def __repr__(self):
        return f"TensorBuffer({self.role.value}#{self.index}, shape={self.shape}, dtype={self.array.dtype})"


class TensorBufferPool:
    """Pool of pre-allocated input and output buffers. No resizing after construction."""

    def __init__(self, input_spec: TensorSpec, output_spec: TensorSpec,
                 input_buffers: int = 2, output_buffers: int = 2):
        if input_buffers < 1 or output_buffers < 1:
            raise ValueError("Pool needs at least one input and one output buffer")
        self.specs = {BufferRole.INPUT: input_spec, BufferRole.OUTPUT: output_spec}
        self.capacities = {BufferRole.INPUT: input_buffers, BufferRole.OUTPUT: output_buffers}
        self._free: dict[BufferRole, deque[TensorBuffer]] = {
            role: deque(TensorBuffer(self, role, i, self.specs[role]) for i in range(self.capacities[role]))
            for role in BufferRole
        }
        self._borrowed: dict[int, BufferRole] = {}
        self._lock = threading.Lock()
        self._closed = False
        logger.info(f"Allocated buffer pool: {input_buffers} x input{input_spec.shape} {input_spec.dtype}, "
                    f"{output_buffers} x output{output_spec.shape} {output_spec.dtype}")

    @classmethod
    def for_model(cls, handle, input_buffers: int = 2, output_buffers: int = 2) -> "TensorBufferPool":
        return cls(handle.input_spec, handle.output_spec, input_buffers, output_buffers)

    def _roles_for(self, shape: Sequence[int], role: Optional[BufferRole]) -> list[BufferRole]:
        shape = tuple(shape)
        if role is not None:
            role = BufferRole(role)
            if self.specs[role].shape != shape:
                raise ValueError(f"No {role.value} buffers of shape {shape}, pool holds {self.specs[role].shape}")
            return [role]
        # Input and output may share a shape, then either role can serve the request
        roles = [candidate for candidate in BufferRole if self.specs[candidate].shape == shape]
        if not roles:
            raise ValueError(f"No buffers of shape {shape} in pool")
        return roles

    def acquire(self, shape: Sequence[int], role: Optional[BufferRole] = None) -> TensorBuffer:
        roles = self._roles_for(shape, role)
        with self._lock:
            if self._closed:
                raise ShutdownError("Buffer pool has been closed")
            role = next((r for r in roles if self._free[r]), None)
            if role is None:
                raise PoolExhaustedError("/".join(r.value for r in roles), sum(self.capacities[r] for r in roles))
            buffer = self._free[role].popleft()
            self._borrowed[id(buffer)] = role
        logger.debug(f"Acquired {buffer}")
        return buffer

    def release(self, buffer: TensorBuffer) -> None:
        if buffer.pool is not self:
            raise ValueError(f"{buffer} does not belong to this pool")
        with self._lock:
            if id(buffer) not in self._borrowed:
                raise ValueError(f"{buffer} is not borrowed")
            del self._borrowed[id(buffer)]
            if not self._closed:
                self._free[buffer.role].append(buffer)
        logger.debug(f"Released {buffer}")

    @contextmanager
    def borrow(self, role: BufferRole, shape: Optional[Sequence[int]] = None) -> Iterator[TensorBuffer]:
        buffer = self.acquire(shape or self.specs[BufferRole(role)].shape, role)
        try:
            yield buffer
        finally:
            self.release(buffer)

    def in_use(self, role: Optional[BufferRole] = None) -> int:
        with self._lock:
            if role is None:
                return len(self._borrowed)
            return sum(1 for r in self._borrowed.values() if r == role)

    def capacity(self, role: BufferRole) -> int:
        return self.capacities[role]

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            for free in self._free.values():
                free.clear()
            borrowed = len(self._borrowed)
        if borrowed:
            logger.warning(f"Buffer pool closed with {borrowed} buffers still borrowed")
        logger.info("Released buffer pool")
