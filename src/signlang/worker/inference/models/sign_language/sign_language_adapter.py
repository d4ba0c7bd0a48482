"""
Adapter for the bundled sign-language classifier
Input: camera frame, NHWC (1, height, width, channels), RGB or grayscale, scaled to [0, 1]
       or a flattened hand-landmark vector when the model takes keypoints (e.g. (1, 63) for 21 x/y/z points)
Output: (1, num_classes) scores, one per sign; quantized models are dequantized before postprocess
Labels come from a labels file with one sign per line, the fingerspelling alphabet is used when none is given.
"""

import io
import logging
import string
from typing import Any, Optional, Sequence

import numpy as np
from PIL import Image

from signlang.common.model import RawItem, TensorSpec
from signlang.worker.inference.model_adapter import ModelAdapter

logger = logging.getLogger(__name__)

ALPHABET_LABELS = list(string.ascii_uppercase)


class SignLanguageAdapter(ModelAdapter):
    def __init__(self, labels: Optional[Sequence[str]] = None, top_k: int = 0):
        super().__init__(labels or ALPHABET_LABELS, top_k)

    def _open_image(self, item: RawItem) -> Image.Image:
        if item.type == "image_path":
            return Image.open(item.data)
        if item.type == "image_bytes":
            return Image.open(io.BytesIO(item.data))
        raise ValueError(f"Unsupported raw item type for sign language model: {item.type}")

    def _frame_to_array(self, image: Image.Image, height: int, width: int, channels: int) -> np.ndarray:
        image = image.convert("L" if channels == 1 else "RGB")
        image = image.resize((width, height), Image.Resampling.BILINEAR)
        frame = np.asarray(image, dtype=np.float32) / 255.0
        if channels == 1:
            frame = frame[..., np.newaxis]
        return frame

    def preprocess_items(self, items: list[RawItem], input_spec: TensorSpec, meta: Optional[dict[str, Any]] = None) -> np.ndarray:
        if all(i.type == "features" for i in items):
            return super().preprocess(np.concatenate([np.ravel(i.data) for i in items]), input_spec, meta)
        if len(input_spec.shape) != 4:
            raise ValueError(f"Image items need an NHWC input, model input is {input_spec.shape}")
        batch, height, width, channels = input_spec.shape
        if len(items) != batch:
            raise ValueError(f"Model takes {batch} frame(s) per call, got {len(items)}")
        frames = []
        for item in items:
            with self._open_image(item) as image:
                frames.append(self._frame_to_array(image, height, width, channels))
        return np.stack(frames, axis=0).astype(np.float32)
