# =============================================================================
# Art Docent - Recognition Pipeline
# =============================================================================
# Orchestrates one recognition request:
#
#   IDLE -> PREPROCESSING -> EMBEDDING -> SEARCHING -> MATCHED | NO_MATCH
#                                                   \-> FAILED (any stage)
#
# A failing stage short-circuits to FAILED with the originating error
# attached.  Nothing is retried here; re-capturing and retrying is the
# caller's decision.  One request per pipeline at a time is assumed; the
# caller rejects or queues overlapping requests.
# =============================================================================

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from PIL import Image

from recognition.context import RecognitionContext
from recognition.preprocess import RawImage, to_tensor
from recognition.similarity import MatchResult
from shared.errors import DimensionMismatch, DocentError, ModelLoadError

logger = logging.getLogger(__name__)


class RecognitionState(str, Enum):
    IDLE = "idle"
    PREPROCESSING = "preprocessing"
    EMBEDDING = "embedding"
    SEARCHING = "searching"
    MATCHED = "matched"
    NO_MATCH = "no_match"
    FAILED = "failed"


@dataclass
class RecognitionOutcome:
    """
    Result of one recognize() call.

    Attributes:
        state:      Terminal state (MATCHED, NO_MATCH or FAILED).
        match:      Accepted best match, or None.
        error:      Error that caused FAILED, or None.
        candidates: Top-K (identifier, score) pairs when requested.
        timings_ms: Duration of each completed stage in milliseconds.
        canvas:     The letterboxed image the model saw (for debugging).
    """

    state: RecognitionState
    match: Optional[MatchResult] = None
    error: Optional[DocentError] = None
    candidates: List[Tuple[str, float]] = field(default_factory=list)
    timings_ms: Dict[str, float] = field(default_factory=dict)
    canvas: Optional[Image.Image] = None

    @property
    def error_code(self) -> Optional[str]:
        return self.error.code if self.error is not None else None

    @property
    def matched(self) -> bool:
        return self.state is RecognitionState.MATCHED


class RecognitionPipeline:
    """
    Preprocess -> embed -> search, with an acceptance threshold.

    Args:
        context:   Initialized RecognitionContext providing model and catalog.
        threshold: Minimum similarity score for a match (deployment policy).
        top_k:     Default number of diagnostic candidates (0 = none).
    """

    def __init__(self, context: RecognitionContext, threshold: float, top_k: int = 0):
        self._context = context
        self.threshold = threshold
        self.top_k = top_k
        self.state = RecognitionState.IDLE
        self._executor: Optional[ThreadPoolExecutor] = None

    def _enter(self, state: RecognitionState) -> None:
        logger.debug("Recognition state: %s -> %s", self.state.value, state.value)
        self.state = state

    def recognize(self, image: RawImage, top_k: Optional[int] = None) -> RecognitionOutcome:
        """
        Recognize the artwork in ``image``.

        Never raises for recognition failures: they come back as a FAILED
        outcome carrying the error and its code.

        Args:
            image: PIL image or uint8 pixel array.
            top_k: Number of diagnostic candidates (defaults to self.top_k).

        Returns:
            RecognitionOutcome in state MATCHED, NO_MATCH or FAILED.
        """
        top_k = self.top_k if top_k is None else top_k
        timings: Dict[str, float] = {}
        canvas = None

        try:
            self._enter(RecognitionState.PREPROCESSING)
            start = time.perf_counter()
            preprocessor = self._context.preprocessor
            canvas = preprocessor.letterbox(image)
            tensor = to_tensor(canvas, preprocessor.normalization, preprocessor.layout)
            timings["preprocess"] = (time.perf_counter() - start) * 1000.0

            self._enter(RecognitionState.EMBEDDING)
            start = time.perf_counter()
            model = self._context.model
            if model is None or not self._context.is_ready():
                raise self._context.load_error or ModelLoadError("Embedding model is not loaded")
            vector = model.infer(tensor)
            timings["embed"] = (time.perf_counter() - start) * 1000.0

            self._enter(RecognitionState.SEARCHING)
            start = time.perf_counter()
            index = self._context.index
            if index.dimension is not None and vector.shape[0] != index.dimension:
                raise DimensionMismatch(index.dimension, vector.shape[0], context="query embedding")
            match = index.best_match(vector, self.threshold)
            candidates = index.query(vector, top_k) if top_k > 0 else []
            timings["search"] = (time.perf_counter() - start) * 1000.0

        except DocentError as exc:
            failed_stage = self.state.value
            self._enter(RecognitionState.FAILED)
            logger.warning("Recognition failed during %s: [%s] %s", failed_stage, exc.code, exc)
            return RecognitionOutcome(
                state=RecognitionState.FAILED, error=exc, timings_ms=timings, canvas=canvas,
            )

        if match is None:
            self._enter(RecognitionState.NO_MATCH)
            logger.info("No artwork matched (catalog=%d, threshold=%.2f)", len(index), self.threshold)
        else:
            self._enter(RecognitionState.MATCHED)
            if match.record.metadata is None:
                logger.warning("Matched '%s' has no metadata in the catalog", match.identifier)
            logger.info("Matched '%s' (score=%.4f)", match.identifier, match.score)

        return RecognitionOutcome(
            state=self.state,
            match=match,
            candidates=candidates,
            timings_ms=timings,
            canvas=canvas,
        )

    def recognize_async(self, image: RawImage, top_k: Optional[int] = None) -> "Future[RecognitionOutcome]":
        """Run recognize() on the pipeline's background worker."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="recognition")
        return self._executor.submit(self.recognize, image, top_k)

    def close(self) -> None:
        """Stop the background worker, waiting for a running request."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
