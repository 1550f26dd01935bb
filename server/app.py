# =============================================================================
# Art Docent - FastAPI Server Application
# =============================================================================
# HTTP API over the recognizer and the docent session: clients post a
# captured photo, get back the matched artwork, then ask questions answered
# by the local LLM grounded in that artwork's metadata.
#
# The recognition context, pipeline and generation session are built by the
# lifespan handler and kept on app.state; create_app() accepts pre-built
# components so tests (and embedding applications) can supply their own.
# =============================================================================

import base64
import binascii
import logging
import threading
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from config import Config, get_config
from generation.session import GenerationSession
from generation.stream import TokenStream, generate_text
from recognition.context import RecognitionContext
from recognition.pipeline import RecognitionOutcome, RecognitionPipeline
from recognition.preprocess import decode_image
from shared.errors import (
    DocentError,
    GenerationError,
    GenerationTimeout,
    InvalidImage,
    SessionStateError,
)
from shared.schemas import (
    AskRequest,
    AskResponse,
    CandidateResponse,
    GenerationStatsResponse,
    MatchResponse,
    RecognitionResponse,
    RecognizeRequest,
)

logger = logging.getLogger(__name__)


def _to_response(outcome: RecognitionOutcome) -> RecognitionResponse:
    match = None
    if outcome.match is not None:
        match = MatchResponse(
            artwork_id=outcome.match.identifier,
            score=round(outcome.match.score, 6),
            metadata=outcome.match.record.metadata,
        )
    return RecognitionResponse(
        state=outcome.state.value,
        error_code=outcome.error_code,
        error=str(outcome.error) if outcome.error is not None else None,
        match=match,
        candidates=[
            CandidateResponse(artwork_id=identifier, score=round(score, 6))
            for identifier, score in outcome.candidates
        ],
        timings_ms={stage: round(ms, 2) for stage, ms in outcome.timings_ms.items()},
    )


def _failed_response(error: DocentError) -> RecognitionResponse:
    return RecognitionResponse(state="failed", error_code=error.code, error=str(error))


class _StreamCleanup:
    """Close a token stream and release the generation lock exactly once."""

    def __init__(self, stream: TokenStream, lock: threading.Lock):
        self._stream = stream
        self._lock = lock
        self._guard = threading.Lock()
        self.done = False

    def __call__(self) -> None:
        with self._guard:
            if self.done:
                return
            self.done = True
        try:
            self._stream.close()
        finally:
            self._lock.release()


def create_app(
    config: Optional[Config] = None,
    context: Optional[RecognitionContext] = None,
    session: Optional[GenerationSession] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config:  Configuration (defaults to get_config() at startup).
        context: Pre-built recognition context (default: from config).
        session: Pre-built generation session (default: from config).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Initialize resources on startup and release them on shutdown.

        On startup:
            - Loads the catalog and the embedding model.
            - Loads the GGUF LLM and initializes the docent session.
        On shutdown:
            - Stops the recognition worker, releases the model handles.
        """
        cfg = config or get_config()
        state = app.state
        state.config = cfg
        state.start_time = time.time()
        state.recognition_lock = threading.Lock()
        state.generation_lock = threading.Lock()
        state.last_artwork_id = None

        logger.info("Starting server - loading recognition context...")
        state.context = context or RecognitionContext.from_config(cfg)
        state.context.initialize()
        state.pipeline = RecognitionPipeline(state.context, threshold=cfg.match_threshold, top_k=0)

        logger.info("Loading docent LLM...")
        state.session = session or GenerationSession.from_config(cfg)
        if not state.session.is_model_loaded:
            state.session.load_model(cfg.llm_model_path)
        if state.session.is_model_loaded and not state.session.is_session_active:
            state.session.init_session()

        logger.info("Server ready - accepting requests.")
        yield

        logger.info("Shutting down server...")
        state.pipeline.close()
        state.context.shutdown()
        state.session.unload_model()

    app = FastAPI(
        title="Art Docent Server",
        description=(
            "Recognizes artworks in captured photos by embedding similarity "
            "against a reference catalog, and answers visitor questions with "
            "a local LLM grounded in the recognized artwork's metadata."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.get("/health")
    def health_check(request: Request):
        """Readiness of the recognizer and the docent, plus uptime."""
        state = request.app.state
        recognizer_ready = state.context.is_ready()
        generator_ready = state.session.is_session_active
        return {
            "status": "ok" if recognizer_ready else "loading",
            "recognizer_ready": recognizer_ready,
            "generator_ready": generator_ready,
            "catalog_size": len(state.context.index),
            "uptime_seconds": round(time.time() - state.start_time, 2),
        }

    @app.post("/api/v1/recognize", response_model=RecognitionResponse)
    def recognize(payload: RecognizeRequest, request: Request):
        """
        Recognize the artwork in a base64-encoded photo.

        Recognition failures (undecodable image, model not loaded, ...) are
        reported in the body with state "failed" and an error code.
        """
        state = request.app.state
        if not state.recognition_lock.acquire(blocking=False):
            raise HTTPException(status_code=409, detail="A recognition request is already running")
        try:
            try:
                raw_bytes = base64.b64decode(payload.image_data, validate=True)
                image = decode_image(raw_bytes)
            except (binascii.Error, ValueError) as exc:
                return _failed_response(InvalidImage(f"Invalid base64 image data: {exc}"))
            except InvalidImage as exc:
                return _failed_response(exc)

            outcome = state.pipeline.recognize(image, top_k=payload.top_k)
        finally:
            state.recognition_lock.release()

        if outcome.matched:
            state.last_artwork_id = outcome.match.identifier
        return _to_response(outcome)

    def _prepare_session(state, artwork_id: Optional[str]) -> Optional[str]:
        """Ground the session in the requested artwork and warm its prompt cache."""
        session: GenerationSession = state.session
        if not session.is_session_active:
            raise HTTPException(status_code=503, detail="Docent model not loaded")

        artwork_id = artwork_id or state.last_artwork_id
        metadata = None
        if artwork_id is not None:
            record = state.context.index.get(artwork_id)
            if record is None:
                raise HTTPException(status_code=404, detail=f"Artwork {artwork_id} not found")
            metadata = record.metadata

        session.set_artwork(metadata)
        if not session.decode_system_prompt():
            raise HTTPException(status_code=500, detail="Failed to decode system prompt")
        return artwork_id

    @app.post("/api/v1/ask", response_model=AskResponse)
    def ask(payload: AskRequest, request: Request):
        """Answer a question about an artwork (the last recognized one by default)."""
        state = request.app.state
        if not state.generation_lock.acquire(blocking=False):
            raise HTTPException(status_code=409, detail="The docent is busy answering")
        try:
            artwork_id = _prepare_session(state, payload.artwork_id)
            answer = generate_text(
                state.session,
                payload.question,
                timeout=state.config.generation_timeout_seconds,
                max_queue=state.config.stream_queue_size,
            )
        except SessionStateError as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        except GenerationTimeout as exc:
            raise HTTPException(status_code=504, detail=str(exc))
        except GenerationError as exc:
            raise HTTPException(status_code=500, detail=str(exc))
        finally:
            state.generation_lock.release()

        stats = state.session.stats
        logger.info(
            "Answered about %s (%d tokens, %.2f tok/s)",
            artwork_id, stats.total_tokens, stats.tokens_per_second,
        )
        return AskResponse(
            artwork_id=artwork_id,
            answer=answer.strip(),
            stop_reason=state.session.last_stop_reason,
            stats=GenerationStatsResponse(
                total_tokens=stats.total_tokens,
                total_time_seconds=round(stats.total_time_seconds, 3),
                tokens_per_second=round(stats.tokens_per_second, 2),
            ),
        )

    @app.post("/api/v1/ask/stream")
    def ask_stream(payload: AskRequest, request: Request):
        """Answer a question, streaming tokens as plain text while they are produced."""
        state = request.app.state
        if not state.generation_lock.acquire(blocking=False):
            raise HTTPException(status_code=409, detail="The docent is busy answering")
        try:
            _prepare_session(state, payload.artwork_id)
            stream = TokenStream(
                state.session,
                payload.question,
                timeout=state.config.generation_timeout_seconds,
                max_queue=state.config.stream_queue_size,
            )
        except SessionStateError as exc:
            state.generation_lock.release()
            raise HTTPException(status_code=409, detail=str(exc))
        except HTTPException:
            state.generation_lock.release()
            raise

        cleanup = _StreamCleanup(stream, state.generation_lock)

        def _tokens():
            try:
                yield from stream
            except GenerationTimeout:
                yield "\n[timed out]"
            except DocentError as exc:
                logger.error("Streaming answer failed: [%s] %s", exc.code, exc)
                yield "\n[generation failed]"
            finally:
                cleanup()

        # Background tasks also run when the body was never iterated
        background = BackgroundTasks()
        background.add_task(cleanup)
        return StreamingResponse(
            _tokens(),
            media_type="text/plain; charset=utf-8",
            background=background,
        )

    return app


app = create_app()
