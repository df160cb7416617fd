# =============================================================================
# Station Inference - OCR Collaborator
# =============================================================================
# Text extraction for /ocrgenerate. Tesseract does the recognition; this
# module only wraps it and merges the extracted text with the user's prompt
# into the single user turn sent to the chat model.
# =============================================================================

import io
import logging

import pytesseract
from PIL import Image

from server.errors import MediaDecodeError, OcrError

logger = logging.getLogger(__name__)


class TesseractOcr:
    """
    Tesseract-backed text extraction.

    Args:
        language: Tesseract language code(s), e.g. "eng" or "eng+deu".
    """

    def __init__(self, language: str = "eng"):
        self.language = language

    def extract_text(self, image_bytes: bytes) -> str:
        """
        Recognize the text in an encoded image.

        Raises:
            MediaDecodeError: If the bytes are not a decodable image.
            OcrError:         If Tesseract itself fails.
        """
        try:
            image = Image.open(io.BytesIO(image_bytes))
            image.load()
        except Exception as exc:
            raise MediaDecodeError(f"Could not decode image for OCR: {exc}") from exc

        try:
            text = pytesseract.image_to_string(image, lang=self.language)
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, OSError) as exc:
            raise OcrError(f"OCR failed: {exc}") from exc

        text = text.strip()
        logger.info("OCR completed: %d characters extracted", len(text))
        if text:
            logger.debug("Extracted text preview: %s...", text[:200])
        return text


def build_ocr_prompt(extracted_text: str, prompt: str) -> str:
    """Merge OCR output and the user's request into one user message."""
    if extracted_text:
        return (
            f'Here is the text I extracted from the image:\n\n"{extracted_text}"\n\n'
            f"User request: {prompt}"
        )
    return f"I couldn't extract any text from the image. User request: {prompt}"
