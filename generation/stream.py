# =============================================================================
# Art Docent - Token Streaming Channel
# =============================================================================
# Runs GenerationSession.generate_streaming() on a worker thread and hands
# the produced tokens to the consumer through a bounded queue, so consumers
# never run inside the generation loop's callback.
#
# The consumer iterates the TokenStream until a done sentinel arrives.
# Errors travel through the same queue.  When the caller's overall deadline
# passes, the cancel event is set (the session checks it between tokens)
# and GenerationTimeout is raised, which callers report differently from a
# GenerationError.
# =============================================================================

import logging
import queue
import threading
import time
from typing import List, Optional

from generation.session import GenerationSession
from shared.errors import DocentError, GenerationError, GenerationTimeout

logger = logging.getLogger(__name__)

# Observed caller policy: give up on an answer after 5 minutes
DEFAULT_TIMEOUT_SECONDS = 300.0

_DONE = object()


def _wrap_crash(exc: Exception) -> GenerationError:
    """Turn an unexpected worker exception into a chained GenerationError."""
    try:
        raise GenerationError(str(exc) or type(exc).__name__) from exc
    except GenerationError as wrapped:
        return wrapped


class TokenStream:
    """
    Iterator over the tokens of one generation running in the background.

    Args:
        session:   An initialized GenerationSession.
        question:  The visitor's question.
        timeout:   Overall deadline in seconds for the whole answer.
        max_queue: Capacity of the token channel; the producer blocks (while
                   still honouring cancellation) when the consumer lags.
    """

    def __init__(
        self,
        session: GenerationSession,
        question: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_queue: int = 64,
    ):
        self.session = session
        self.timeout = timeout
        self._queue: "queue.Queue" = queue.Queue(maxsize=max_queue)
        self._cancel = threading.Event()
        self._deadline = time.monotonic() + timeout
        self._pieces: List[str] = []
        self._finished = False
        self.timed_out = False

        self._thread = threading.Thread(
            target=self._run, args=(question,), name="generation-stream", daemon=True,
        )
        self._thread.start()

    # -----------------------------------------------------------------
    # Producer side (worker thread)
    # -----------------------------------------------------------------

    def _put(self, item) -> None:
        """Block until the item is queued or the stream is cancelled."""
        while True:
            try:
                self._queue.put(item, timeout=0.1)
                return
            except queue.Full:
                if self._cancel.is_set():
                    return

    def _run(self, question: str) -> None:
        terminal = GenerationError("Generation worker exited without a result")
        try:
            completed = self.session.generate_streaming(question, self._put, self._cancel)
            if not completed and self.session.last_stop_reason == "error":
                terminal = GenerationError("The model failed while generating; see logs")
            else:
                terminal = _DONE
        except DocentError as exc:
            terminal = exc
        except Exception as exc:
            logger.exception("Generation worker crashed")
            terminal = _wrap_crash(exc)
        finally:
            self._put(terminal)

    # -----------------------------------------------------------------
    # Consumer side
    # -----------------------------------------------------------------

    def _expire(self) -> None:
        self._cancel.set()
        self._finished = True
        self.timed_out = True
        logger.warning("Generation timed out after %.1fs; cancelling", self.timeout)
        raise GenerationTimeout(f"Generation took longer than {self.timeout:.0f}s")

    def __iter__(self) -> "TokenStream":
        return self

    def __next__(self) -> str:
        if self._finished:
            raise StopIteration

        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            self._expire()
        try:
            item = self._queue.get(timeout=remaining)
        except queue.Empty:
            self._expire()

        if item is _DONE:
            self._finished = True
            raise StopIteration
        if isinstance(item, BaseException):
            self._finished = True
            raise item

        self._pieces.append(item)
        return item

    @property
    def text(self) -> str:
        """Concatenation of the tokens consumed so far."""
        return "".join(self._pieces)

    def cancel(self) -> None:
        """Ask the generation to stop at the next token boundary."""
        self._cancel.set()
        self._finished = True

    def close(self, join_timeout: Optional[float] = 5.0) -> None:
        """Cancel if still running and wait for the worker thread."""
        if self._thread.is_alive():
            self._cancel.set()
            self._thread.join(timeout=join_timeout)
        self._finished = True

    def __enter__(self) -> "TokenStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def generate_text(
    session: GenerationSession,
    question: str,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    max_queue: int = 64,
) -> str:
    """
    Non-streaming convenience: the full answer as one string.

    Raises:
        GenerationTimeout: If the answer is not complete within ``timeout``.
        GenerationError:   If the model fails while generating.
        SessionStateError: If the session is not ready.
    """
    with TokenStream(session, question, timeout=timeout, max_queue=max_queue) as stream:
        for _ in stream:
            pass
        return stream.text
