# =============================================================================
# Station Inference - Chunked NDJSON Stream
# =============================================================================
# Bridges a GenerationSession running on its worker thread to the chunked
# HTTP response. Fragments are handed from the worker thread to the event
# loop through an asyncio.Queue, so the response yields them in production
# order as soon as they exist:
#
#     metadata?  chunk*  (complete | error)
#
# If the client goes away mid-stream the response iterator is cancelled or
# closed; the finally block then cancels the generation and writes nothing
# more. Tensor release and gate release happen on the worker thread.
# =============================================================================

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Optional

from server.generation import GenerationSession, SessionState
from shared.schemas import ChunkEvent, CompleteEvent, ErrorEvent, MetadataEvent

logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"

_END = object()


class SessionStream:
    """
    NDJSON event stream for one generation session.

    Args:
        session:        A prepared GenerationSession (tensors built).
        metadata:       Event sent first, or None when there is nothing to announce.
        complete_extra: Extra fields for the terminal complete event
                        (e.g. imageUrl, extractedText).
    """

    def __init__(
        self,
        session: GenerationSession,
        metadata: Optional[MetadataEvent] = None,
        complete_extra: Optional[Dict[str, Any]] = None,
    ):
        self._session = session
        self._metadata = metadata
        self._complete_extra = complete_extra or {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self.terminated = False

    def start(self) -> None:
        """Start the session's worker thread. Must be called on the event loop."""
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._session.start(on_chunk=self._push, on_finished=lambda _session: self._push(_END))

    def _push(self, item) -> None:
        # Runs on the worker thread.
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            logger.debug("Event loop closed; dropping stream item")

    async def events(self) -> AsyncIterator[bytes]:
        """Yield encoded NDJSON lines until the terminal event."""
        try:
            if self._metadata is not None:
                yield self._metadata.to_line()

            while True:
                item = await self._queue.get()
                if item is _END:
                    break
                yield ChunkEvent(data=item).to_line()

            self.terminated = True
            if self._session.state is SessionState.COMPLETE:
                yield CompleteEvent(
                    full_response=self._session.full_response, **self._complete_extra
                ).to_line()
            else:
                message = str(self._session.error) if self._session.error else "Generation was interrupted."
                yield ErrorEvent(error=message).to_line()
        finally:
            if not self.terminated:
                logger.warning("Client disconnected mid-stream; stopping generation")
                self._session.cancel()
