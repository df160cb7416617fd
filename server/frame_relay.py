# =============================================================================
# Station Inference - WebSocket Frame Relay
# =============================================================================
# Real-time pose estimation over a WebSocket: binary frame in, annotated
# binary JPEG out, no envelope in either direction.
#
# A receiver task reads frames as fast as the client sends them into a
# single-entry LatestFrameSlot; the processing loop always takes the newest
# frame. Frames that arrive while another one is being processed replace the
# pending one, so latency stays bounded to one frame in flight plus one
# pending instead of growing with a queue.
# =============================================================================

import asyncio
import logging
from typing import Optional

from starlette.concurrency import run_in_threadpool
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from server.errors import ModelNotReadyError, PoseFrameError
from server.pose import PosePipeline

logger = logging.getLogger(__name__)

# RFC 6455 "Try Again Later"
CLOSE_TRY_AGAIN_LATER = 1013


class LatestFrameSlot:
    """Holds at most one pending frame; newer frames replace older ones."""

    def __init__(self):
        self._frame: Optional[bytes] = None
        self._ready = asyncio.Event()
        self._closed = False
        self.received = 0
        self.dropped = 0

    def put(self, frame: bytes) -> None:
        self.received += 1
        if self._frame is not None:
            self.dropped += 1
        self._frame = frame
        self._ready.set()

    def close(self) -> None:
        self._closed = True
        self._ready.set()

    async def take(self) -> Optional[bytes]:
        """Wait for the newest frame. Returns None once closed and drained."""
        while True:
            if self._frame is not None:
                frame, self._frame = self._frame, None
                self._ready.clear()
                return frame
            if self._closed:
                return None
            await self._ready.wait()
            self._ready.clear()


class FrameRelay:
    """
    Serves one WebSocket connection for real-time pose estimation.

    Args:
        pipeline: The pose pipeline that annotates each frame.
        host:     The ModelHost, checked for pose readiness on connect.
    """

    def __init__(self, pipeline: PosePipeline, host):
        self._pipeline = pipeline
        self._host = host

    async def serve(self, websocket: WebSocket) -> None:
        await websocket.accept()
        if not self._host.health().pose_ready:
            logger.error("Rejecting pose WebSocket: pose model is not loaded")
            await websocket.close(code=CLOSE_TRY_AGAIN_LATER, reason="Pose model not ready")
            return

        logger.info("Client connected for real-time pose estimation")
        slot = LatestFrameSlot()
        receiver = asyncio.create_task(self._receive(websocket, slot))
        try:
            await self._process(websocket, slot)
        finally:
            receiver.cancel()
            try:
                await receiver
            except asyncio.CancelledError:
                pass
            logger.info(
                "Client disconnected (%d frames received, %d dropped)",
                slot.received, slot.dropped,
            )

    async def _receive(self, websocket: WebSocket, slot: LatestFrameSlot) -> None:
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                data = message.get("bytes")
                if data:
                    slot.put(data)
                elif message.get("text") is not None:
                    logger.warning("Ignoring text message on pose WebSocket")
        except (WebSocketDisconnect, RuntimeError) as exc:
            logger.debug("Pose WebSocket receive ended: %s", exc)
        finally:
            slot.close()

    async def _process(self, websocket: WebSocket, slot: LatestFrameSlot) -> None:
        while True:
            frame = await slot.take()
            if frame is None:
                return
            try:
                annotated = await run_in_threadpool(self._pipeline.estimate, frame)
            except ModelNotReadyError as exc:
                logger.error("Pose frame rejected: %s", exc)
                await self._close(websocket, CLOSE_TRY_AGAIN_LATER, "Pose model not ready")
                return
            except PoseFrameError as exc:
                logger.error("Error processing frame via WebSocket: %s", exc)
                continue

            if WebSocketState.DISCONNECTED in (websocket.client_state, websocket.application_state):
                return
            try:
                await websocket.send_bytes(annotated)
            except (WebSocketDisconnect, RuntimeError) as exc:
                logger.debug("Pose WebSocket send failed: %s", exc)
                return

    async def _close(self, websocket: WebSocket, code: int, reason: str) -> None:
        if websocket.application_state == WebSocketState.CONNECTED:
            try:
                await websocket.close(code=code, reason=reason)
            except (WebSocketDisconnect, RuntimeError):
                logger.debug("Pose WebSocket already closed")
