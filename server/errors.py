# =============================================================================
# Station Inference - Error Taxonomy
# =============================================================================
# Exceptions raised by the server components. Every StationError carries the
# HTTP status it maps to when it escapes a request handler before the stream
# has started; the application registers one handler that renders them as
# {"error": "<message>"} bodies.
# =============================================================================


class StationError(Exception):
    """Base class for request-level errors with an HTTP status."""

    status_code = 500

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class InvalidRequestError(StationError):
    """Missing or inconsistent request fields."""

    status_code = 400


class MediaDecodeError(StationError):
    """An uploaded image or audio payload could not be decoded."""

    status_code = 400


class ModelNotReadyError(StationError):
    """The requested model has not finished loading."""

    status_code = 503


class InferenceBusyError(StationError):
    """Another generation holds the inference engine."""

    status_code = 503


class GenerationError(StationError):
    """The model failed while building inputs, before any output was sent."""

    status_code = 500


class OcrError(StationError):
    """The OCR engine failed on a decodable image."""

    status_code = 500


class ModelLoadError(RuntimeError):
    """A model is missing or failed to load. Fatal at startup."""


class PoseFrameError(RuntimeError):
    """Processing of a single pose frame failed at the given stage."""

    def __init__(self, stage, message: str):
        super().__init__(f"{stage.value}: {message}")
        self.stage = stage
