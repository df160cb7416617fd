# =============================================================================
# Station Inference - Shared API Schemas
# =============================================================================
# Pydantic models defining the data contracts between the desktop client and
# the inference server: conversation turns, generation requests, the NDJSON
# stream events emitted by /generate and /ocrgenerate, and the bodies of the
# read-only introspection endpoints.
#
# Stream events serialize with camelCase keys (imageUrl, fullResponse, ...)
# because that is what existing clients parse.
# =============================================================================

from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Role(str, Enum):
    """Author of a conversation turn."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Attachments(BaseModel):
    """References to media attached to a historical turn."""

    image: Optional[str] = None
    audio: Optional[str] = None


class ConversationTurn(BaseModel):
    """
    One message of the conversation history sent by the client.

    Attributes:
        role:        Who authored the turn.
        content:     The turn's text. Null content is treated as empty text.
        attachments: Optional media references (not re-encoded for the model).
    """

    role: Role
    content: str = ""
    attachments: Optional[Attachments] = None

    @field_validator("content", mode="before")
    @classmethod
    def _null_content_is_empty(cls, value):
        return "" if value is None else value


class GenerationRequest(BaseModel):
    """
    A validated /generate request.

    At least one of text, image_ref or audio_bytes must be non-empty.

    Attributes:
        text:        The new user text.
        image_ref:   Uploaded file name or remote URL of the attached image.
        audio_bytes: Raw bytes of the attached audio file.
        history:     Prior conversation turns, oldest first.
    """

    text: Optional[str] = None
    image_ref: Optional[str] = None
    audio_bytes: Optional[bytes] = None
    history: List[ConversationTurn] = Field(default_factory=list)

    @model_validator(mode="after")
    def _require_content(self):
        if not (self.text or self.image_ref or self.audio_bytes):
            raise ValueError("Please provide text, an image, or an audio file.")
        return self


# ---------------------------------------------------------------------------
# Stream events (one JSON object per line)
# ---------------------------------------------------------------------------


class _StreamEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_line(self) -> bytes:
        """Serialize as one newline-terminated NDJSON line."""
        return (self.model_dump_json(by_alias=True, exclude_none=True) + "\n").encode("utf-8")


class MetadataEvent(_StreamEvent):
    """Sent once, before any chunk, when the request carried an image."""

    type: Literal["metadata"] = "metadata"
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    message: Optional[str] = None
    extracted_text: Optional[str] = Field(default=None, alias="extractedText")
    extracted_text_length: Optional[int] = Field(default=None, alias="extractedTextLength")


class ChunkEvent(_StreamEvent):
    """One generated text fragment."""

    type: Literal["chunk"] = "chunk"
    data: str


class CompleteEvent(_StreamEvent):
    """Terminal event of a successful generation."""

    type: Literal["complete"] = "complete"
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    full_response: str = Field(alias="fullResponse")
    extracted_text: Optional[str] = Field(default=None, alias="extractedText")
    extracted_text_length: Optional[int] = Field(default=None, alias="extractedTextLength")


class ErrorEvent(_StreamEvent):
    """Terminal event of a generation that failed after the stream started."""

    type: Literal["error"] = "error"
    error: str


# ---------------------------------------------------------------------------
# Introspection bodies
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    error: str


class ModelStatus(BaseModel):
    loaded: bool
    path: str


class ModelsStatus(BaseModel):
    vision: ModelStatus
    pose: ModelStatus


class HealthResponse(BaseModel):
    """
    Response of GET /health.

    Attributes:
        status:  "ok" when both models are loaded, "loading" otherwise.
        message: Human readable summary.
        models:  Per-model load state and path.
    """

    status: str
    message: str
    models: ModelsStatus


class ModelInfoResponse(BaseModel):
    vision: ModelStatus
    pose: ModelStatus
    device: str
    dtype: str
    max_new_tokens: int


class UploadedImage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    filename: str
    url: str
    upload_time: str = Field(alias="uploadTime")


class UploadListResponse(BaseModel):
    images: List[UploadedImage]
