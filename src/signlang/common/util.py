import importlib.util
import logging
import os
import uuid
from typing import Any, Iterable

import numpy as np

logger = logging.getLogger(__name__)

def generate_request_id() -> str:
    return uuid.uuid4().hex[:12]

def pin_shape(shape: Iterable[Any], asset_path: str = "") -> tuple[int, ...]:
    # Buffers are fixed-size, so symbolic or dynamic dimensions are pinned to 1
    pinned = []
    for dim in shape:
        if isinstance(dim, (int, np.integer)) and dim > 0:
            pinned.append(int(dim))
        else:
            logger.debug(f"Pinning dynamic dimension {dim!r} of {asset_path or 'model'} to 1")
            pinned.append(1)
    return tuple(pinned)

def load_adapter(adapter_path: str, **kwargs: Any):
    """
    Load a user ModelAdapter from a Python file.
    The file must define a class named `ModelAdapter`, it is instantiated with `kwargs`.
    """
    if not os.path.isfile(adapter_path):
        raise FileNotFoundError(f"Adapter file not found: {adapter_path}")
    module_name = f"signlang_adapter_{os.path.splitext(os.path.basename(adapter_path))[0]}"
    spec = importlib.util.spec_from_file_location(module_name, adapter_path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot import adapter from {adapter_path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    adapter_cls = getattr(module, "ModelAdapter", None)
    if adapter_cls is None:
        raise ImportError(f"{adapter_path} does not define a ModelAdapter class")
    logger.info(f"Loaded ModelAdapter from {adapter_path}")
    return adapter_cls(**kwargs)
