import asyncio
import base64
import binascii
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI, HTTPException

from signlang.common.config import load_config
from signlang.common.errors import LoadError, ShutdownError
from signlang.common.model import (CancelResponse, ClassificationResult, ClassifyRequest, HealthResponse,
                                   RawItem, SubmitResponse)
from signlang.common.util import load_adapter
from signlang.worker.dispatcher import PendingResult, RequestDispatcher
from signlang.worker.inference.buffer_pool import TensorBufferPool
from signlang.worker.inference.inference_engine import InferenceEngine
from signlang.worker.inference.model_adapter import ModelAdapter, load_labels
from signlang.worker.inference.model_store import ModelHandle, ModelStore
from signlang.worker.inference.models.sign_language.sign_language_adapter import SignLanguageAdapter

logger = logging.getLogger(__name__)

# Data plane:
# Callers -> Worker uses HTTP REST API, classification runs on the single inference thread


class Worker:
    def __init__(self, config: dict[str, Any]):
        self.config = config
        self.store: Optional[ModelStore] = None
        self.handle: Optional[ModelHandle] = None
        self.pool: Optional[TensorBufferPool] = None
        self.engine: Optional[InferenceEngine] = None
        self.dispatcher: Optional[RequestDispatcher] = None
        self.initialized = False
        # request_id -> pending, oldest first; bounded so finished results can still be polled
        self.history: OrderedDict[str, PendingResult] = OrderedDict()
        self.history_lock = threading.Lock()

        self.data_app = FastAPI(title="Sign Language Inference Worker")
        self._setup_fastapi_routes()

    def _build_adapter(self) -> ModelAdapter:
        model_cfg = self.config['model']
        labels = load_labels(model_cfg['labels_path']) if model_cfg['labels_path'] else None
        if model_cfg['adapter_path']:
            return load_adapter(model_cfg['adapter_path'], labels=labels, top_k=model_cfg['top_k'])
        return SignLanguageAdapter(labels, top_k=model_cfg['top_k'])

    def initialize(self):
        if self.initialized:
            logger.error("Worker.initialize() is called while Worker is already initialized!")
            raise RuntimeError("Worker.initialize() is called while Worker is already initialized!")

        model_cfg = self.config['model']
        pool_cfg = self.config['pool']

        # The model is loaded first: a LoadError leaves no pool or thread behind
        self.store = ModelStore(accelerator=model_cfg['accelerator'],
                                accelerator_policy=model_cfg['accelerator_policy'],
                                num_threads=model_cfg['num_threads'],
                                gpu_delegate_library=model_cfg['gpu_delegate_library'])
        self.handle = self.store.load(model_cfg['asset_path'],
                                      expected_input_shape=model_cfg['input_shape'] or None,
                                      expected_output_shape=model_cfg['output_shape'] or None)
        logger.info(f"Model input {self.handle.input_spec.shape} {self.handle.input_spec.dtype}, "
                    f"output {self.handle.output_spec.shape}, accelerator={self.handle.used_accelerator}")

        try:
            adapter = self._build_adapter()
            classes = self.handle.output_spec.size
            if len(adapter.labels) not in (0, classes):
                raise LoadError(self.handle.asset_path, f"model outputs {classes} classes but {len(adapter.labels)} labels are configured")
        except Exception:
            self.store.close()
            raise

        self.pool = TensorBufferPool.for_model(self.handle, pool_cfg['input_buffers'], pool_cfg['output_buffers'])
        self.engine = InferenceEngine(self.pool, adapter)
        self.dispatcher = RequestDispatcher(self.engine, self.handle, self.store)
        self.dispatcher.start()
        self.initialized = True

    def _remember(self, pending: PendingResult):
        with self.history_lock:
            self.history[pending.request_id] = pending
            while len(self.history) > self.config['worker']['result_history']:
                self.history.popitem(last=False)

    def submit(self, features: Any, request_id: Optional[str] = None) -> PendingResult:
        if self.dispatcher is None:
            raise ShutdownError("Worker is not initialized")
        pending = self.dispatcher.submit(features, request_id=request_id)
        self._remember(pending)
        return pending

    def _setup_fastapi_routes(self):
        @self.data_app.get("/health", response_model=HealthResponse)
        async def health():
            if self.handle is None or self.dispatcher is None or self.dispatcher.is_shutdown:
                raise HTTPException(status_code=503, detail="Worker is not serving")
            return HealthResponse(
                status="ok",
                model=self.handle.asset_path,
                input_shape=list(self.handle.input_spec.shape),
                output_shape=list(self.handle.output_spec.shape),
                quantized=self.handle.input_spec.quantization is not None,
                used_accelerator=self.handle.used_accelerator,
                labels=len(self.engine.adapter.labels),
                pending=self.dispatcher.pending_count,
            )

        @self.data_app.post("/classify")
        async def classify(req: ClassifyRequest):
            if (req.features is None) == (req.image_base64 is None):
                raise HTTPException(status_code=422, detail="Provide exactly one of `features` or `image_base64`")
            if req.image_base64 is not None:
                try:
                    features = [RawItem(type="image_bytes", data=base64.b64decode(req.image_base64, validate=True))]
                except binascii.Error:
                    raise HTTPException(status_code=422, detail="`image_base64` is not valid base64")
            else:
                features = req.features
            try:
                pending = self.submit(features, request_id=req.request_id)
            except ShutdownError as e:
                raise HTTPException(status_code=503, detail=str(e))
            except ValueError as e:
                raise HTTPException(status_code=409, detail=str(e))

            if not req.wait:
                return SubmitResponse(request_id=pending.request_id, status=pending.status)
            result: ClassificationResult = await asyncio.wrap_future(pending.future)
            return result

        @self.data_app.get("/requests/{request_id}")
        async def get_request(request_id: str):
            with self.history_lock:
                pending = self.history.get(request_id)
            if pending is None:
                raise HTTPException(status_code=404, detail=f"Unknown request {request_id}")
            if pending.done():
                return pending.result()
            return SubmitResponse(request_id=pending.request_id, status=pending.status)

        @self.data_app.delete("/requests/{request_id}", response_model=CancelResponse)
        async def cancel_request(request_id: str):
            with self.history_lock:
                known = request_id in self.history
            if not known:
                raise HTTPException(status_code=404, detail=f"Unknown request {request_id}")
            return CancelResponse(request_id=request_id, cancelled=self.dispatcher.cancel(request_id))

    def start_data_api_server(self):
        def run():
            uvicorn.run(self.data_app, host=self.config['worker']['host'], port=self.config['worker']['data_port'], log_level="info")
        api_thread = threading.Thread(target=run, daemon=True)
        logger.info("Starting FastAPI server for worker data API...")
        api_thread.start()

    def shutdown(self):
        if self.dispatcher is not None:
            self.dispatcher.shutdown()
        logger.info("Worker shut down successfully.")


if __name__ == "__main__":
    config = load_config()
    logging.basicConfig(filename=config['worker']['log_file'], level=config['worker']['log_level'],
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    worker = Worker(config)
    worker.initialize()
    worker.start_data_api_server()
    print(f'Worker is serving {worker.handle.asset_path} on port {config["worker"]["data_port"]}')

    try:
        while True:
            time.sleep(60) # Hold main thread
    except KeyboardInterrupt:
        logger.info("Shutting down worker...")
        worker.shutdown()
