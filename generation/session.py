# =============================================================================
# Art Docent - Generation Session (llama.cpp)
# =============================================================================
# Wraps a local GGUF causal language model loaded through llama-cpp-python
# and answers visitor questions about the recognized artwork.
#
# Required call sequence:
#   1. load_model(path)        one-time, heavyweight (memory-maps the weights)
#   2. init_session()          claims the context, clears the KV cache, seeds
#                              the sampler
#   3. set_artwork(metadata)   choose the artwork the answers are grounded in
#      decode_system_prompt()  evaluate the system turn once and snapshot the
#                              KV cache; later questions restore the snapshot
#                              and only evaluate the user turn
#   4. generate_streaming(question, on_token, cancel_event)
#   5. close_session() / unload_model()
#
# The decode state is not re-entrant: one generation at a time per session.
# A second concurrent call is rejected with SessionStateError.  The token loop
# checks a cooperative cancel event between steps so a caller-side timeout
# actually stops the work.
# =============================================================================

import codecs
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from llama_cpp import Llama

from generation.prompts import build_system_prompt, build_user_prompt
from shared.errors import SessionStateError
from shared.schemas import ArtworkMetadata

logger = logging.getLogger(__name__)

# ChatML end-of-turn marker; generation stops on it as well as on EOS
_END_OF_TURN = "<|im_end|>"


@dataclass
class SamplingParams:
    """Sampler settings applied to every generation of a session."""

    temperature: float = 0.7
    top_k: int = 40
    top_p: float = 0.9
    repeat_penalty: float = 1.1
    max_tokens: int = 512
    seed: int = 42


@dataclass
class GenerationStats:
    """Throughput of the last generation."""

    total_tokens: int = 0
    total_time_seconds: float = 0.0

    @property
    def tokens_per_second(self) -> float:
        if self.total_time_seconds <= 0:
            return 0.0
        return self.total_tokens / self.total_time_seconds


class GenerationSession:
    """
    Docent chat session over a llama.cpp model.

    Args:
        sampling:              Sampler settings.
        n_ctx:                 Context window size.
        n_threads:             CPU threads used by llama.cpp.
        n_gpu_layers:          Layers offloaded to the GPU (-1 = all).
        require_system_prompt: When True, generate_streaming() refuses to run
                               until decode_system_prompt() has succeeded.
        llama_factory:         Callable constructing the model handle
                               (defaults to llama_cpp.Llama).
    """

    def __init__(
        self,
        sampling: Optional[SamplingParams] = None,
        n_ctx: int = 2048,
        n_threads: int = 4,
        n_gpu_layers: int = 0,
        require_system_prompt: bool = True,
        llama_factory: Callable[..., Llama] = Llama,
    ):
        self.sampling = sampling or SamplingParams()
        self._n_ctx = n_ctx
        self._n_threads = n_threads
        self._n_gpu_layers = n_gpu_layers
        self.require_system_prompt = require_system_prompt
        self._llama_factory = llama_factory

        self._llm: Optional[Llama] = None
        self._model_path: Optional[str] = None
        self._session_active = False
        self._stop_tokens: set = set()

        self._artwork: Optional[ArtworkMetadata] = None
        self._system_tokens: Optional[List[int]] = None
        self._system_state = None

        # Held for the whole of a decode/generation; acquired non-blocking
        self._busy = threading.Lock()

        self.stats = GenerationStats()
        self.last_stop_reason: Optional[str] = None

    @classmethod
    def from_config(cls, config, **kwargs) -> "GenerationSession":
        """Build an (unloaded) session from a Config instance."""
        sampling = SamplingParams(
            temperature=config.temperature,
            top_k=config.top_k_sampling,
            top_p=config.top_p,
            repeat_penalty=config.repeat_penalty,
            max_tokens=config.max_new_tokens,
            seed=config.seed,
        )
        return cls(
            sampling=sampling,
            n_ctx=config.n_ctx,
            n_threads=config.n_threads,
            n_gpu_layers=config.n_gpu_layers,
            require_system_prompt=config.require_system_prompt,
            **kwargs,
        )

    # -----------------------------------------------------------------
    # State queries
    # -----------------------------------------------------------------

    @property
    def is_model_loaded(self) -> bool:
        return self._llm is not None

    @property
    def is_session_active(self) -> bool:
        return self._session_active

    @property
    def is_system_prompt_decoded(self) -> bool:
        return self._system_state is not None

    @property
    def is_generating(self) -> bool:
        return self._busy.locked()

    @property
    def artwork(self) -> Optional[ArtworkMetadata]:
        return self._artwork

    def can_generate(self) -> bool:
        """Whether generate_streaming() may be called now."""
        return self._session_active and (
            self.is_system_prompt_decoded or not self.require_system_prompt
        )

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    def load_model(self, path: str) -> bool:
        """
        Load GGUF weights (one-time).

        Returns:
            True if the model is loaded, False if the file is missing or the
            runtime rejects it.
        """
        if self._llm is not None:
            logger.warning("Model already loaded from %s; ignoring load of %s", self._model_path, path)
            return True

        if not os.path.isfile(path):
            logger.error("Model file not found: %s", path)
            return False

        logger.info(
            "Loading GGUF LLM: %s (n_ctx=%d, n_threads=%d, n_gpu_layers=%d)",
            path, self._n_ctx, self._n_threads, self._n_gpu_layers,
        )
        try:
            self._llm = self._llama_factory(
                model_path=path,
                n_ctx=self._n_ctx,
                n_threads=self._n_threads,
                n_gpu_layers=self._n_gpu_layers,
                seed=self.sampling.seed,
                verbose=False,
            )
        except (ValueError, RuntimeError, OSError):
            logger.exception("Failed to load model from %s", path)
            return False

        self._model_path = path
        self._stop_tokens = {self._llm.token_eos()}
        end_of_turn = self._llm.tokenize(_END_OF_TURN.encode("utf-8"), add_bos=False, special=True)
        if len(end_of_turn) == 1:
            self._stop_tokens.add(end_of_turn[0])

        logger.info("Model loaded successfully.")
        return True

    def init_session(self) -> bool:
        """
        Claim the model context for a conversation.

        Clears the KV cache and seeds the sampler.

        Returns:
            True once the session is active; False if no model is loaded.

        Raises:
            SessionStateError: If the session is already active.
        """
        if self._llm is None:
            logger.error("Cannot initialize session: model not loaded")
            return False
        if self._session_active:
            raise SessionStateError("Session already initialized; call close_session() first")

        self._llm.reset()
        self._llm.set_seed(self.sampling.seed)
        self._system_tokens = None
        self._system_state = None
        self._session_active = True
        logger.info(
            "Session initialized (temp=%.2f, top_k=%d, top_p=%.2f, seed=%d)",
            self.sampling.temperature, self.sampling.top_k, self.sampling.top_p, self.sampling.seed,
        )
        return True

    def close_session(self) -> None:
        """Release session state. A no-op when no session is active."""
        if not self._session_active:
            logger.debug("close_session() without an active session; nothing to do")
            return
        with self._busy:
            self._system_tokens = None
            self._system_state = None
            if self._llm is not None:
                self._llm.reset()
            self._session_active = False
        logger.info("Session closed.")

    def unload_model(self) -> None:
        """Close the session and free the model. Safe to call repeatedly."""
        self.close_session()
        if self._llm is None:
            return
        llm, self._llm = self._llm, None
        llm.close()
        logger.info("Model unloaded: %s", self._model_path)
        self._model_path = None

    def __enter__(self) -> "GenerationSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unload_model()

    # -----------------------------------------------------------------
    # System prompt caching
    # -----------------------------------------------------------------

    def _require_session(self) -> None:
        if not self._session_active:
            raise SessionStateError("Session not initialized; call init_session() first")

    def _acquire(self) -> None:
        if not self._busy.acquire(blocking=False):
            raise SessionStateError("A generation is already in progress on this session")

    def set_artwork(self, metadata: Optional[ArtworkMetadata]) -> None:
        """
        Ground subsequent answers in ``metadata``.

        Changing the artwork invalidates the cached system prompt.
        """
        if metadata == self._artwork:
            return
        self._acquire()
        try:
            self._artwork = metadata
            self._system_tokens = None
            self._system_state = None
        finally:
            self._busy.release()
        logger.info("Artwork set: %s", metadata.title if metadata else None)

    def _tokenize_system_prompt(self) -> List[int]:
        text = build_system_prompt(self._artwork)
        return self._llm.tokenize(text.encode("utf-8"), add_bos=True, special=True)

    def decode_system_prompt(self) -> bool:
        """
        Evaluate the system prompt once and cache its KV state.

        Idempotent: returns True immediately when the current artwork's
        prompt is already cached.

        Returns:
            True on success, False if the model failed to evaluate it.

        Raises:
            SessionStateError: If the session is not initialized or busy.
        """
        self._require_session()
        if self._system_state is not None:
            return True

        self._acquire()
        try:
            tokens = self._tokenize_system_prompt()
            start = time.time()
            self._llm.reset()
            self._llm.eval(tokens)
            self._system_state = self._llm.save_state()
            self._system_tokens = tokens
        except (RuntimeError, ValueError):
            logger.exception("Failed to decode system prompt")
            self._system_state = None
            self._system_tokens = None
            return False
        finally:
            self._busy.release()

        logger.info(
            "System prompt cached: %d tokens in %.2fs", len(tokens), time.time() - start,
        )
        return True

    # -----------------------------------------------------------------
    # Generation
    # -----------------------------------------------------------------

    def _prepare_prompt(self, question: str) -> List[int]:
        """Position the KV cache after the system turn; return tokens still to evaluate."""
        user_text = build_user_prompt(question)
        if self._system_state is not None:
            self._llm.load_state(self._system_state)
            return self._llm.tokenize(user_text.encode("utf-8"), add_bos=False, special=True)

        # No cached prefix: evaluate system + user turns from scratch
        self._llm.reset()
        return self._tokenize_system_prompt() + self._llm.tokenize(
            user_text.encode("utf-8"), add_bos=False, special=True
        )

    def generate_streaming(
        self,
        question: str,
        on_token: Callable[[str], None],
        cancel_event: Optional[threading.Event] = None,
    ) -> bool:
        """
        Answer ``question``, calling ``on_token`` with each decoded text piece.

        Decoding stops at end-of-sequence / end-of-turn, when ``max_tokens``
        have been produced, when the context window is full, or when
        ``cancel_event`` is set (checked between tokens).

        Args:
            question:     The visitor's question.
            on_token:     Called once per produced token, in order.
            cancel_event: Optional cooperative cancellation signal.

        Returns:
            True on natural completion, False on cancellation or on an
            internal generation error (see ``last_stop_reason``).

        Raises:
            SessionStateError: If the session is not initialized, the system
                               prompt is required but not decoded, or another
                               generation is in flight.
        """
        self._require_session()
        if self.require_system_prompt and self._system_state is None:
            raise SessionStateError("System prompt not decoded; call decode_system_prompt() first")
        self._acquire()

        llm = self._llm
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        produced = 0
        stop_reason = "length"
        start = time.time()

        try:
            llm.set_seed(self.sampling.seed)
            prompt_tokens = self._prepare_prompt(question)
            llm.eval(prompt_tokens)
            logger.debug("Evaluated %d prompt tokens (n_tokens=%d)", len(prompt_tokens), llm.n_tokens)

            while produced < self.sampling.max_tokens:
                if cancel_event is not None and cancel_event.is_set():
                    stop_reason = "cancelled"
                    break
                if llm.n_tokens >= llm.n_ctx():
                    logger.warning("Context window full after %d tokens", produced)
                    break

                token = llm.sample(
                    top_k=self.sampling.top_k,
                    top_p=self.sampling.top_p,
                    temp=self.sampling.temperature,
                    repeat_penalty=self.sampling.repeat_penalty,
                )
                if token in self._stop_tokens:
                    stop_reason = "eos"
                    break

                produced += 1
                piece = decoder.decode(llm.detokenize([token]))
                if piece:
                    on_token(piece)
                llm.eval([token])

            tail = decoder.decode(b"", final=True)
            if tail:
                on_token(tail)

        except (RuntimeError, ValueError):
            logger.exception("Generation failed after %d tokens", produced)
            stop_reason = "error"
        finally:
            self.stats = GenerationStats(total_tokens=produced, total_time_seconds=time.time() - start)
            self.last_stop_reason = stop_reason
            self._busy.release()

        logger.info(
            "Generation %s: %d tokens in %.2fs (%.2f tok/s)",
            stop_reason, produced, self.stats.total_time_seconds, self.stats.tokens_per_second,
        )
        return stop_reason in ("eos", "length")
