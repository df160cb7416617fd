# =============================================================================
# Station Inference - Generation Session
# =============================================================================
# Runs one chat generation end to end:
#   1. Render the normalized conversation through the chat template.
#   2. Build model input tensors from (prompt, image, audio).
#   3. Stream every produced text fragment to an accumulation buffer and to
#      the transport.
#   4. Generate greedily on a worker thread.
#   5. Release every input tensor, whatever the outcome.
#
# Step 5 is owned by InputTensors, a scoped guard whose release() is
# idempotent and runs from the session's close(). close() runs on the worker
# thread after generate() returns or raises, or from the request handler
# when the session fails before its thread starts.
#
# The InferenceGate serializes generations: one in flight at a time. It is
# released by close(), so a generation whose client disconnected still holds
# the engine until it has actually stopped.
# =============================================================================

import asyncio
import gc
import logging
import threading
import time
from collections.abc import Mapping
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

import torch

from server.errors import InferenceBusyError

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Lifecycle of a generation session."""

    IDLE = "idle"            # Nothing sent to the client yet
    STREAMING = "streaming"  # Generation running, fragments flowing
    COMPLETE = "complete"    # Generation finished normally
    FAILED = "failed"        # Model error or client disconnect


def dispose_tensor(value: Any) -> bool:
    """
    Release the native memory behind one model input.

    Tensor types with an explicit dispose() have it called. Torch tensors are
    freed when their last reference is dropped, which the caller does.

    Returns:
        True if value was a tensor.
    """
    dispose = getattr(value, "dispose", None)
    if callable(dispose):
        dispose()
        return True
    return isinstance(value, torch.Tensor)


def _empty_device_cache() -> None:
    gc.collect()
    if torch.cuda.is_available():
        torch.cuda.empty_cache()
    elif torch.backends.mps.is_available():
        torch.mps.empty_cache()


class InputTensors(Mapping):
    """
    Scoped owner of the input tensors built for one session.

    Behaves as a read-only mapping (so it can be splatted into generate())
    and as a context manager whose exit releases every tensor.
    """

    def __init__(self, tensors: Dict[str, Any], dispose: Callable[[Any], bool] = dispose_tensor):
        self._tensors = dict(tensors)
        self._dispose = dispose
        self.constructed = sum(1 for value in self._tensors.values() if _is_tensor(value))
        self.disposed = 0

    def __getitem__(self, key: str) -> Any:
        return self._tensors[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tensors)

    def __len__(self) -> int:
        return len(self._tensors)

    def __enter__(self) -> "InputTensors":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    @property
    def released(self) -> bool:
        return not self._tensors

    def release(self) -> None:
        """Dispose of every held tensor. Safe to call more than once."""
        if not self._tensors:
            return
        logger.debug("Disposing of %d model input tensors...", len(self._tensors))
        while self._tensors:
            key, value = self._tensors.popitem()
            try:
                if self._dispose(value):
                    self.disposed += 1
            except Exception:
                logger.exception("Failed to dispose input tensor '%s'", key)
            del value
        try:
            _empty_device_cache()
        except Exception:
            logger.exception("Failed to empty the device cache")
        logger.debug("Tensors disposed (%d/%d).", self.disposed, self.constructed)


def _is_tensor(value: Any) -> bool:
    return callable(getattr(value, "dispose", None)) or isinstance(value, torch.Tensor)


class InferenceGate:
    """
    Single-writer gate around the vision-language engine.

    Args:
        wait_timeout:  Seconds a request may wait for the engine before it
                       is rejected as busy (0 rejects immediately).
        poll_interval: Seconds between acquisition attempts while waiting.
    """

    def __init__(self, wait_timeout: float = 30.0, poll_interval: float = 0.05):
        self._lock = threading.Lock()
        self._wait_timeout = wait_timeout
        self._poll_interval = poll_interval

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def acquire(self) -> None:
        """
        Wait for the engine without blocking the event loop.

        Raises:
            InferenceBusyError: If the engine is still busy after wait_timeout.
        """
        deadline = time.monotonic() + self._wait_timeout
        while not self._lock.acquire(blocking=False):
            if time.monotonic() >= deadline:
                raise InferenceBusyError(
                    "The model is busy with another request. Please retry shortly."
                )
            await asyncio.sleep(self._poll_interval)

    def release(self) -> None:
        self._lock.release()


class GenerationSession:
    """
    One request's generation, from prompt rendering to tensor release.

    Args:
        vision:     The vision-language capability (render_prompt,
                    build_inputs, generate).
        on_release: Called exactly once when the session closes (used to
                    release the InferenceGate).
    """

    def __init__(self, vision, on_release: Optional[Callable[[], None]] = None):
        self._vision = vision
        self._on_release = on_release
        self._tensors: Optional[InputTensors] = None
        self._fragments: List[str] = []
        self._stop_event = threading.Event()
        self._close_lock = threading.Lock()
        self._closed = False
        self._thread: Optional[threading.Thread] = None
        self._on_chunk: Callable[[str], None] = lambda fragment: None
        self.state = SessionState.IDLE
        self.error: Optional[BaseException] = None

    @property
    def full_response(self) -> str:
        return "".join(self._fragments)

    @property
    def tensors(self) -> Optional[InputTensors]:
        return self._tensors

    @property
    def cancelled(self) -> bool:
        return self._stop_event.is_set()

    @property
    def closed(self) -> bool:
        return self._closed

    def prepare(self, messages: List[Dict[str, Any]], image=None, audio=None) -> None:
        """Render the prompt and build the input tensors (steps 1-2)."""
        prompt = self._vision.render_prompt(messages)
        logger.debug("Prompt structure (first 500 chars): %s...", prompt[:500])
        self._tensors = InputTensors(self._vision.build_inputs(prompt, image, audio))

    def start(
        self,
        on_chunk: Callable[[str], None],
        on_finished: Callable[["GenerationSession"], None],
    ) -> threading.Thread:
        """Run the generation on a worker thread; the thread owns cleanup."""
        if self._tensors is None:
            raise RuntimeError("GenerationSession.start() called before prepare()")
        self.state = SessionState.STREAMING
        self._thread = threading.Thread(
            target=self.run, args=(on_chunk, on_finished), name="generation", daemon=True
        )
        self._thread.start()
        return self._thread

    def run(
        self,
        on_chunk: Callable[[str], None],
        on_finished: Optional[Callable[["GenerationSession"], None]] = None,
    ) -> None:
        """Generate (steps 3-4), then close (step 5) and notify on_finished."""
        self._on_chunk = on_chunk
        self.state = SessionState.STREAMING
        start = time.time()
        try:
            with self._tensors as inputs:
                self._vision.generate(dict(inputs), self._on_text, self._stop_event)
            if self.cancelled:
                self.state = SessionState.FAILED
                logger.info("Generation stopped after client disconnect (%.1fs)", time.time() - start)
            else:
                self.state = SessionState.COMPLETE
                logger.info("Generation complete in %.1fs", time.time() - start)
        except Exception as exc:
            self.error = exc
            self.state = SessionState.FAILED
            logger.exception("Error during generation")
        finally:
            self.close()
            if on_finished is not None:
                on_finished(self)

    def _on_text(self, fragment: str) -> None:
        if not fragment:
            return
        self._fragments.append(fragment)
        if not self.cancelled:
            self._on_chunk(fragment)

    def cancel(self) -> None:
        """Ask the running generation to stop at its next decoding step."""
        if not self._stop_event.is_set():
            logger.info("Cancelling generation")
            self._stop_event.set()

    def close(self) -> None:
        """Release all input tensors and the engine. Idempotent."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True

        logger.debug("Cleaning up generation resources...")
        try:
            if self._tensors is not None:
                self._tensors.release()
        finally:
            response = self.full_response
            if response.strip():
                logger.info("Full response (%d chars)", len(response))
                logger.debug("Full response:\n%s", response)
            if self._on_release is not None:
                try:
                    self._on_release()
                except Exception:
                    logger.exception("Failed to release the inference gate")
            logger.debug("Cleanup complete. Ready for the next request.")
