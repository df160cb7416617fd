import pytest
import pytesseract

from server.errors import MediaDecodeError, OcrError
from server.ocr import TesseractOcr, build_ocr_prompt
from conftest import encode_image


def test_prompt_embeds_extracted_text():
    prompt = build_ocr_prompt("TOTAL 12.50", "What is the total?")
    assert prompt == (
        'Here is the text I extracted from the image:\n\n"TOTAL 12.50"\n\n'
        "User request: What is the total?"
    )


def test_prompt_without_text_still_carries_the_request():
    prompt = build_ocr_prompt("", "Summarize")
    assert prompt == "I couldn't extract any text from the image. User request: Summarize"


def test_extract_text_strips_whitespace(monkeypatch):
    monkeypatch.setattr(pytesseract, "image_to_string", lambda image, lang: "  hello\n\n")
    assert TesseractOcr().extract_text(encode_image()) == "hello"


def test_language_is_forwarded(monkeypatch):
    seen = {}

    def fake(image, lang):
        seen["lang"] = lang
        return ""

    monkeypatch.setattr(pytesseract, "image_to_string", fake)
    assert TesseractOcr(language="eng+deu").extract_text(encode_image()) == ""
    assert seen["lang"] == "eng+deu"


def test_undecodable_image():
    with pytest.raises(MediaDecodeError):
        TesseractOcr().extract_text(b"nope")


def test_missing_tesseract_binary_is_an_ocr_error(monkeypatch):
    def missing(image, lang):
        raise pytesseract.TesseractNotFoundError()

    monkeypatch.setattr(pytesseract, "image_to_string", missing)
    with pytest.raises(OcrError):
        TesseractOcr().extract_text(encode_image())
