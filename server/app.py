# =============================================================================
# Station Inference - FastAPI Server Application
# =============================================================================
# Defines the HTTP and WebSocket surface of the local inference server:
#   - POST /generate          chat generation (text / image / audio + history),
#                             streamed as newline-delimited JSON events
#   - POST /ocrgenerate       OCR the image, merge with the prompt, generate
#   - POST /pose-estimation   one annotated JPEG for one uploaded image
#   - WS   /                  real-time pose estimation, binary frame in/out
#   - GET  /health, /model-info, /uploads/list, /uploads/*
#
# The model host, OCR engine, inference gate and upload store are created in
# create_app() and handed to the handlers; nothing model-related lives in
# module globals.
# =============================================================================

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, File, Form, Request, UploadFile, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from config import get_config
from server.conversation import NewUserTurn, normalize_conversation, parse_history
from server.errors import (
    GenerationError,
    InvalidRequestError,
    MediaDecodeError,
    ModelLoadError,
    PoseFrameError,
    StationError,
)
from server.frame_relay import FrameRelay
from server.generation import GenerationSession, InferenceGate
from server.media import UploadStore, decode_audio, load_image_file, load_image_url
from server.model_host import ModelHost
from server.ocr import TesseractOcr, build_ocr_prompt
from server.pose import FrameStage, PosePipeline
from server.streaming import NDJSON_MEDIA_TYPE, SessionStream
from shared.schemas import (
    ErrorResponse,
    GenerationRequest,
    HealthResponse,
    MetadataEvent,
    ModelInfoResponse,
    ModelsStatus,
    ModelStatus,
    UploadListResponse,
)

logger = logging.getLogger(__name__)


def _validation_message(exc: ValidationError) -> str:
    error = exc.errors()[0]
    cause = error.get("ctx", {}).get("error")
    return str(cause) if cause is not None else error["msg"]


def create_app(
    config=None,
    host: Optional[ModelHost] = None,
    ocr=None,
    load_models: bool = True,
) -> FastAPI:
    """
    Create and configure the FastAPI application instance.

    Args:
        config:      Config to use (defaults to the process singleton).
        host:        Model host; a fresh ModelHost when omitted.
        ocr:         OCR engine exposing extract_text(bytes) -> str.
        load_models: Load the models during startup if the host is not
                     initialized yet. A load failure aborts startup.

    Returns:
        The configured FastAPI application.
    """
    config = config or get_config()
    host = host or ModelHost(config)
    ocr = ocr or TesseractOcr(config.ocr_language)
    gate = InferenceGate(wait_timeout=config.generation_wait_timeout_seconds)
    uploads = UploadStore(config.uploads_dir, config.uploads_url)
    pipeline = PosePipeline(host.require_pose, config)
    relay = FrameRelay(pipeline, host)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Load both models before serving.

        A ModelLoadError propagates, so uvicorn aborts startup and the
        process exits without ever serving a request.
        """
        app.state.start_time = time.time()
        if load_models and not host.is_initialized:
            logger.info("Starting server — loading models...")
            try:
                host.initialize()
            except ModelLoadError as exc:
                logger.critical("Model loading failed: %s", exc)
                raise
        logger.info("Server ready — accepting requests.")
        yield
        logger.info("Shutting down server...")

    app = FastAPI(
        title="Station Inference Server",
        description=(
            "Local, offline multimodal inference: streamed image/audio/text chat "
            "generation, OCR-assisted generation and real-time pose estimation."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.host = host
    app.state.ocr = ocr
    app.state.gate = gate
    app.state.uploads = uploads

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origin_list,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StationError)
    async def station_error_handler(request: Request, exc: StationError):
        logger.warning("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(error=exc.message).model_dump(),
        )

    async def start_stream(
        messages: List[Dict[str, Any]],
        image=None,
        audio=None,
        metadata: Optional[MetadataEvent] = None,
        complete_extra: Optional[Dict[str, Any]] = None,
    ) -> StreamingResponse:
        vision = host.require_vision()
        await gate.acquire()
        session = GenerationSession(vision, on_release=gate.release)
        try:
            await run_in_threadpool(session.prepare, messages, image, audio)
            stream = SessionStream(session, metadata=metadata, complete_extra=complete_extra)
            stream.start()
        except BaseException as exc:
            session.close()
            if isinstance(exc, Exception):
                logger.exception("Failed to prepare generation inputs")
                raise GenerationError(
                    "An internal server error occurred during generation."
                ) from exc
            raise
        return StreamingResponse(stream.events(), media_type=NDJSON_MEDIA_TYPE)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    @app.post("/generate")
    async def generate(
        text: Optional[str] = Form(None),
        image: Optional[UploadFile] = File(None),
        audio: Optional[UploadFile] = File(None),
        conversation: Optional[str] = Form(None),
        image_url: Optional[str] = Form(None, alias="imageUrl"),
    ):
        """Stream a chat answer for the new user turn and its history."""
        image_bytes = await image.read() if image is not None else b""
        audio_bytes = await audio.read() if audio is not None else b""
        logger.info(
            "Request received: %s, %s, %s, conversation history %s",
            "with text" if text else "no text",
            "with image" if image_bytes or image_url else "no image",
            "with audio" if audio_bytes else "no audio",
            "present" if conversation else "missing",
        )

        try:
            request = GenerationRequest(
                text=text or None,
                image_ref=(image.filename if image_bytes else None) or image_url or None,
                audio_bytes=audio_bytes or None,
                history=parse_history(conversation),
            )
        except ValidationError as exc:
            raise InvalidRequestError(_validation_message(exc)) from exc

        vision = host.require_vision()

        pil_image = None
        public_image_url = None
        if image_bytes:
            stored = uploads.save(image_bytes, image.filename)
            pil_image = await run_in_threadpool(load_image_file, stored.path)
            public_image_url = stored.url
        elif image_url:
            pil_image = await run_in_threadpool(
                load_image_url, image_url, uploads, config.image_fetch_timeout_seconds
            )
            public_image_url = image_url

        samples = None
        if request.audio_bytes:
            samples = await run_in_threadpool(decode_audio, request.audio_bytes, vision.sampling_rate)

        normalized = normalize_conversation(
            request.history,
            NewUserTurn(text=request.text, has_image=pil_image is not None, has_audio=samples is not None),
        )
        if normalized.repaired:
            logger.warning("Conversation history needed %d repair(s)", len(normalized.repairs))

        metadata = None
        if public_image_url:
            metadata = MetadataEvent(image_url=public_image_url, message="Processing...\n\n")
        return await start_stream(
            normalized.messages,
            image=pil_image,
            audio=samples,
            metadata=metadata,
            complete_extra={"image_url": public_image_url},
        )

    @app.post("/ocrgenerate")
    async def ocr_generate(
        image: Optional[UploadFile] = File(None),
        prompt: Optional[str] = Form(None),
    ):
        """OCR the uploaded image, merge its text with the prompt and stream an answer."""
        image_bytes = await image.read() if image is not None else b""
        logger.info(
            "OCR request received: %s, %s",
            "with prompt" if prompt else "no prompt",
            "with image" if image_bytes else "no image",
        )
        if not image_bytes:
            raise InvalidRequestError("Please provide an image file for OCR processing.")
        if not prompt:
            raise InvalidRequestError("Please provide a prompt to combine with the OCR text.")
        host.require_vision()

        stored = uploads.save(image_bytes, image.filename, prefix="ocr-")
        extracted = await run_in_threadpool(ocr.extract_text, image_bytes)
        if not extracted:
            logger.info("No text extracted from image")

        normalized = normalize_conversation([], NewUserTurn(text=build_ocr_prompt(extracted, prompt)))
        ocr_fields = {
            "image_url": stored.url,
            "extracted_text": extracted,
            "extracted_text_length": len(extracted),
        }
        metadata = MetadataEvent(message="OCR completed, generating response...\n\n", **ocr_fields)
        return await start_stream(normalized.messages, metadata=metadata, complete_extra=ocr_fields)

    # ------------------------------------------------------------------
    # Pose estimation
    # ------------------------------------------------------------------

    @app.post("/pose-estimation")
    async def pose_estimation(image: Optional[UploadFile] = File(None)):
        """Return the uploaded image annotated with the detected keypoints."""
        frame = await image.read() if image is not None else b""
        if not frame:
            raise InvalidRequestError("No image file uploaded.")
        host.require_pose()
        try:
            annotated = await run_in_threadpool(pipeline.estimate, frame)
        except PoseFrameError as exc:
            if exc.stage is FrameStage.PREPROCESSING:
                raise MediaDecodeError(f"Could not decode image: {exc}") from exc
            logger.error("Error during HTTP pose estimation: %s", exc)
            raise StationError(
                "An internal server error occurred during pose estimation."
            ) from exc
        return Response(content=annotated, media_type="image/jpeg")

    @app.websocket("/")
    async def pose_socket(websocket: WebSocket):
        """Real-time pose estimation: one binary frame in, one annotated frame out."""
        await relay.serve(websocket)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def _models_status() -> ModelsStatus:
        status = host.health()
        return ModelsStatus(
            vision=ModelStatus(loaded=status.vision_ready, path=host.vision_path),
            pose=ModelStatus(loaded=status.pose_ready, path=host.pose_path),
        )

    @app.get("/health", response_model=HealthResponse)
    def health_check():
        """Report per-model load state."""
        ready = host.health().all_ready
        return HealthResponse(
            status="ok" if ready else "loading",
            message="AI Core is online." if ready else "AI Core is starting.",
            models=_models_status(),
        )

    @app.get("/model-info", response_model=ModelInfoResponse)
    def model_info():
        models = _models_status()
        return ModelInfoResponse(
            vision=models.vision,
            pose=models.pose,
            device=config.device,
            dtype=config.torch_dtype_str,
            max_new_tokens=config.max_new_tokens,
        )

    @app.get("/uploads/list", response_model=UploadListResponse)
    def list_uploads():
        """List uploaded images, newest first."""
        return UploadListResponse(images=uploads.list_images())

    # Mounted last so /uploads/list is matched by the route above first.
    app.mount("/uploads", StaticFiles(directory=str(uploads.directory)), name="uploads")

    return app
