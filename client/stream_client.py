# =============================================================================
# Station Inference - Streaming HTTP Client
# =============================================================================
# Provides the InferenceClient class used by desktop tooling to talk to the
# local server: multipart uploads for /generate and /ocrgenerate, then line
# by line parsing of the NDJSON event stream as it arrives.
#
# Servers that predate NDJSON framing sent raw text fragments; any line that
# is not a JSON event is therefore treated as a plain text chunk.
# =============================================================================

import json
import logging
import time
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

import requests
from pydantic import ValidationError

from shared.schemas import ChunkEvent, CompleteEvent, ConversationTurn, ErrorEvent, MetadataEvent

logger = logging.getLogger(__name__)

StreamEvent = Union[MetadataEvent, ChunkEvent, CompleteEvent, ErrorEvent]

_EVENT_MODELS = {
    "metadata": MetadataEvent,
    "chunk": ChunkEvent,
    "complete": CompleteEvent,
    "error": ErrorEvent,
}


def parse_stream_line(line: Union[str, bytes]) -> Optional[StreamEvent]:
    """
    Parse one line of a generation stream.

    Args:
        line: A single line, with or without its trailing newline.

    Returns:
        The parsed event, a ChunkEvent carrying the raw line when it is not a
        known JSON event, or None for blank lines.
    """
    if isinstance(line, bytes):
        line = line.decode("utf-8")
    line = line.rstrip("\r\n")
    if not line.strip():
        return None

    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return ChunkEvent(data=line)

    model = _EVENT_MODELS.get(payload.get("type")) if isinstance(payload, dict) else None
    if model is None:
        return ChunkEvent(data=line)
    try:
        return model.model_validate(payload)
    except ValidationError:
        logger.warning("Malformed %s event; treating it as text", payload.get("type"))
        return ChunkEvent(data=line)


@dataclass
class GenerationResult:
    """
    Everything a finished (or interrupted) stream delivered.

    Attributes:
        text:           Concatenation of all chunk fragments.
        full_response:  The server's full response from the complete event.
        image_url:      URL of the stored image, when there was one.
        extracted_text: OCR text, for /ocrgenerate streams.
        error:          Error message from a terminal error event.
        complete:       True once a complete or error event was seen.
    """

    text: str = ""
    full_response: Optional[str] = None
    image_url: Optional[str] = None
    extracted_text: Optional[str] = None
    error: Optional[str] = None
    complete: bool = False

    @property
    def succeeded(self) -> bool:
        return self.complete and self.error is None


def collect_events(events: Iterable[StreamEvent]) -> GenerationResult:
    """Fold a stream of events into a GenerationResult."""
    result = GenerationResult()
    fragments: List[str] = []
    for event in events:
        if isinstance(event, MetadataEvent):
            result.image_url = event.image_url or result.image_url
            if event.extracted_text is not None:
                result.extracted_text = event.extracted_text
        elif isinstance(event, ChunkEvent):
            fragments.append(event.data)
        elif isinstance(event, CompleteEvent):
            result.full_response = event.full_response
            result.image_url = event.image_url or result.image_url
            if event.extracted_text is not None:
                result.extracted_text = event.extracted_text
            result.complete = True
        elif isinstance(event, ErrorEvent):
            result.error = event.error
            result.complete = True
    result.text = "".join(fragments)
    return result


class InferenceClient:
    """
    HTTP client for the local inference server.

    Args:
        server_url: Base URL of the server (e.g., "http://localhost:3010").
        timeout:    Read timeout in seconds between streamed lines.
    """

    def __init__(self, server_url: str, timeout: float = 600.0):
        self._server_url = server_url.rstrip("/")
        self._timeout = timeout
        self._session = requests.Session()

    def health(self) -> Dict[str, Any]:
        response = self._session.get(f"{self._server_url}/health", timeout=5)
        response.raise_for_status()
        return response.json()

    def wait_for_server(self, timeout: int = 300, poll_interval: float = 5.0) -> bool:
        """
        Block until the server's /health endpoint reports both models loaded.

        Args:
            timeout:       Maximum seconds to wait for the server.
            poll_interval: Seconds between health check polls.

        Returns:
            True if the server is ready, False if timeout expired.
        """
        start = time.time()
        logger.info("Waiting for server at %s (timeout=%ds)...", self._server_url, timeout)

        while (time.time() - start) < timeout:
            try:
                if self.health().get("status") == "ok":
                    logger.info("Server is ready (models loaded).")
                    return True
                logger.info("Server responded but models not yet loaded...")
            except requests.exceptions.ConnectionError:
                logger.debug("Server not reachable yet...")
            except requests.exceptions.RequestException:
                logger.debug("Health check error", exc_info=True)

            time.sleep(poll_interval)

        logger.error("Timed out waiting for server after %ds.", timeout)
        return False

    def generate(
        self,
        text: Optional[str] = None,
        image_path: Optional[str] = None,
        audio_path: Optional[str] = None,
        image_url: Optional[str] = None,
        conversation: Optional[List[Union[ConversationTurn, Dict[str, Any]]]] = None,
    ) -> Iterator[StreamEvent]:
        """
        Submit a chat turn and yield stream events as they arrive.

        Args:
            text:         The new user text.
            image_path:   Local image file to upload.
            audio_path:   Local audio file to upload.
            image_url:    Remote or previously uploaded image URL, used
                          when no image file is given.
            conversation: Prior turns, oldest first.

        Raises:
            requests.HTTPError: If the server rejects the request before streaming.
        """
        data: Dict[str, str] = {}
        if text:
            data["text"] = text
        if image_url and not image_path:
            data["imageUrl"] = image_url
        if conversation:
            data["conversation"] = json.dumps([
                turn.model_dump(mode="json", exclude_none=True) if isinstance(turn, ConversationTurn) else turn
                for turn in conversation
            ])

        with ExitStack() as stack:
            files = {}
            if image_path:
                files["image"] = (Path(image_path).name, stack.enter_context(open(image_path, "rb")))
            if audio_path:
                files["audio"] = (Path(audio_path).name, stack.enter_context(open(audio_path, "rb")))
            yield from self._stream("/generate", data, files)

    def ocr_generate(self, image_path: str, prompt: str) -> Iterator[StreamEvent]:
        """Submit an image for OCR-assisted generation and yield stream events."""
        with open(image_path, "rb") as handle:
            files = {"image": (Path(image_path).name, handle)}
            yield from self._stream("/ocrgenerate", {"prompt": prompt}, files)

    def _stream(self, path: str, data: Dict[str, str], files: Dict[str, Any]) -> Iterator[StreamEvent]:
        url = f"{self._server_url}{path}"
        with self._session.post(
            url, data=data, files=files or None, stream=True, timeout=(10, self._timeout)
        ) as response:
            if not response.ok:
                message = _error_message(response)
                logger.error("POST %s failed (%d): %s", path, response.status_code, message)
                raise requests.HTTPError(message, response=response)

            response.encoding = "utf-8"
            for line in response.iter_lines(decode_unicode=True):
                event = parse_stream_line(line)
                if event is not None:
                    yield event


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.text
