import tomllib
import os
import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(__file__), '../../..', 'config.toml')
ACCELERATORS = ("none", "gpu")
ACCELERATOR_POLICIES = ("fallback", "fail_fast")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

def load_config(path: Optional[str] = None) -> dict[str, Any]:
    # Load configuration file
    with open(path or DEFAULT_CONFIG_PATH, 'rb') as f:
        config = tomllib.load(f)
    return validate_config(config)

def _is_positive_int(value: Any) -> bool:
    return type(value) is int and value > 0

def _is_shape(value: Any) -> bool:
    return type(value) is list and all(_is_positive_int(d) for d in value)

def validate_config(config: dict[str, Any]) -> dict[str, Any]:
    for section in ('model', 'pool', 'worker'):
        if type(config.get(section)) is not dict:
            logger.warning(f"[{section}] section is missing in configuration, using defaults")
            config[section] = {}
    model = config['model']
    pool = config['pool']
    worker = config['worker']

    # [model]
    if not model.get('asset_path') or type(model['asset_path']) is not str:
        logger.warning("Model asset path is not defined or invalid in configuration, defaulting to assets/models/sign_language.tflite")
        model['asset_path'] = "assets/models/sign_language.tflite"

    if type(model.get('labels_path', "")) is not str:
        logger.warning("Labels path is invalid in configuration, using built-in alphabet labels")
        model['labels_path'] = ""
    model.setdefault('labels_path', "")

    if type(model.get('adapter_path', "")) is not str:
        logger.warning("Adapter path is invalid in configuration, using the sign language adapter")
        model['adapter_path'] = ""
    model.setdefault('adapter_path', "")

    for key in ('input_shape', 'output_shape'):
        if key in model and not _is_shape(model[key]):
            logger.warning(f"Expected {key} {model[key]!r} is invalid in configuration, shape check disabled")
            model[key] = []
        model.setdefault(key, [])

    if model.get('accelerator', "none") not in ACCELERATORS:
        logger.warning(f"Accelerator {model.get('accelerator')!r} is invalid in configuration, defaulting to none")
        model['accelerator'] = "none"
    model.setdefault('accelerator', "none")

    if model.get('accelerator_policy', "fallback") not in ACCELERATOR_POLICIES:
        logger.warning(f"Accelerator policy {model.get('accelerator_policy')!r} is invalid in configuration, defaulting to fallback")
        model['accelerator_policy'] = "fallback"
    model.setdefault('accelerator_policy', "fallback")

    if not model.get('gpu_delegate_library') or type(model['gpu_delegate_library']) is not str:
        model['gpu_delegate_library'] = "libtensorflowlite_gpu_delegate.so"

    if 'num_threads' in model and not _is_positive_int(model['num_threads']):
        logger.warning("Interpreter thread count is invalid in configuration, defaulting to 2")
        model['num_threads'] = 2
    model.setdefault('num_threads', 2)

    # 0 returns every label
    if type(model.get('top_k', 0)) is not int or model.get('top_k', 0) < 0:
        logger.warning("top_k is invalid in configuration, returning all labels")
        model['top_k'] = 0
    model.setdefault('top_k', 0)

    # [pool]
    if not _is_positive_int(pool.get('input_buffers')):
        logger.warning("Input buffer count is not defined or invalid in configuration, defaulting to 2")
        pool['input_buffers'] = 2

    if not _is_positive_int(pool.get('output_buffers')):
        logger.warning("Output buffer count is not defined or invalid in configuration, defaulting to 2")
        pool['output_buffers'] = 2

    # [worker]
    if not worker.get('host') or type(worker['host']) is not str:
        logger.warning("Worker host is not defined or invalid in configuration, defaulting to 0.0.0.0")
        worker['host'] = "0.0.0.0"

    if not _is_positive_int(worker.get('data_port')) or worker['data_port'] > 65535:
        logger.warning("Worker Data port is not defined or invalid in configuration, defaulting to 8002")
        worker['data_port'] = 8002

    if not _is_positive_int(worker.get('result_history')):
        worker['result_history'] = 256

    if not worker.get('log_file') or type(worker['log_file']) is not str:
        worker['log_file'] = "worker.log"

    if str(worker.get('log_level', "")).upper() not in LOG_LEVELS:
        logger.warning("Log level is not defined or invalid in configuration, defaulting to INFO")
        worker['log_level'] = "INFO"
    worker['log_level'] = worker['log_level'].upper()

    return config
