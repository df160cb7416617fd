# =============================================================================
# Station Inference - Multimodal Preprocessor
# =============================================================================
# Turns uploaded media into model-ready values:
#   - Images are persisted to the uploads directory (so the client can show
#     them again by URL) and loaded through the model's native image loader,
#     unchanged in pixel content. Remote images are fetched by URL.
#   - Audio is decoded to float32 PCM, resampled to the model's rate and
#     downmixed to a single channel by averaging the two channels.
#
# The uploads directory is the only state shared across requests. File names
# are prefixed with a millisecond timestamp and created exclusively, so
# concurrent requests never overwrite each other.
# =============================================================================

import io
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional
from urllib.parse import quote, unquote, urlparse

import librosa
import numpy as np
from transformers.image_utils import load_image

from server.errors import MediaDecodeError
from shared.schemas import UploadedImage

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp")


@dataclass
class StoredUpload:
    filename: str
    path: Path
    url: str


class UploadStore:
    """
    Timestamp-named file store backing the /uploads static route.

    Args:
        directory: Directory where uploads are written (created if missing).
        base_url:  Public URL under which the directory is served.
    """

    def __init__(self, directory: str, base_url: str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._base_url = base_url.rstrip("/")

    def url_for(self, filename: str) -> str:
        return f"{self._base_url}/{quote(filename)}"

    def save(self, data: bytes, original_name: Optional[str], prefix: str = "") -> StoredUpload:
        """
        Write an upload under a collision-free, timestamp-prefixed name.

        Args:
            data:          Raw file bytes.
            original_name: Client-supplied file name (path components are stripped).
            prefix:        Optional name prefix (e.g. "ocr-").

        Returns:
            StoredUpload with the final file name, path and public URL.
        """
        safe_name = Path(original_name or "").name.strip() or "upload"
        stamp = int(time.time() * 1000)
        candidate = f"{prefix}{stamp}-{safe_name}"
        attempt = 0
        while True:
            path = self.directory / candidate
            try:
                with open(path, "xb") as handle:
                    handle.write(data)
                break
            except FileExistsError:
                attempt += 1
                candidate = f"{prefix}{stamp}-{attempt}-{safe_name}"

        stored = StoredUpload(filename=candidate, path=path, url=self.url_for(candidate))
        logger.info("Stored upload %s (%d bytes) -> %s", safe_name, len(data), stored.url)
        return stored

    def resolve_local(self, url: str) -> Optional[Path]:
        """Map a URL pointing into this store back to a file path, if it does."""
        if not url.startswith(self._base_url + "/"):
            return None
        filename = Path(unquote(url[len(self._base_url) + 1:])).name
        path = self.directory / filename
        return path if path.is_file() else None

    def list_images(self) -> List[UploadedImage]:
        """List stored images, newest first."""
        if not self.directory.exists():
            return []
        entries = []
        for entry in os.scandir(self.directory):
            if not entry.is_file() or not entry.name.lower().endswith(IMAGE_EXTENSIONS):
                continue
            mtime = entry.stat().st_mtime
            entries.append((mtime, entry.name))
        entries.sort(reverse=True)
        return [
            UploadedImage(
                filename=name,
                url=self.url_for(name),
                upload_time=datetime.fromtimestamp(mtime, tz=timezone.utc).isoformat(),
            )
            for mtime, name in entries
        ]


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


def load_image_file(path: Path):
    """Load a stored upload with the model's native image loader."""
    try:
        return load_image(str(path))
    except Exception as exc:
        raise MediaDecodeError(f"Could not decode image '{path.name}': {exc}") from exc


def load_image_url(url: str, store: Optional[UploadStore] = None, timeout: Optional[float] = 10.0):
    """
    Load an image referenced by URL.

    URLs pointing into the local upload store are read from disk; anything
    else must be an http(s) URL and is fetched.

    Args:
        url:     The image URL.
        store:   Upload store whose URLs are resolved locally.
        timeout: Seconds to wait on the remote host before giving up.
    """
    if store is not None:
        local = store.resolve_local(url)
        if local is not None:
            return load_image_file(local)
    if urlparse(url).scheme not in ("http", "https"):
        raise MediaDecodeError("imageUrl must be an http or https URL.")
    try:
        return load_image(url, timeout=timeout)
    except Exception as exc:
        raise MediaDecodeError(f"Could not load image from {url}: {exc}") from exc


# ---------------------------------------------------------------------------
# Audio
# ---------------------------------------------------------------------------


def downmix_to_mono(samples: np.ndarray) -> np.ndarray:
    """
    Reduce (channels, n) audio to (n,) by averaging the first two channels.

    Mono input, either (n,) or (1, n), passes through unchanged.
    """
    samples = np.asarray(samples, dtype=np.float32)
    if samples.ndim == 1:
        return samples
    if samples.shape[0] == 1:
        return samples[0]
    return ((samples[0] + samples[1]) / 2.0).astype(np.float32)


def decode_audio(data: bytes, sampling_rate: int) -> np.ndarray:
    """
    Decode an uploaded audio file into model-ready mono samples.

    Args:
        data:          Encoded audio bytes (WAV, FLAC, OGG, ...).
        sampling_rate: Target rate of the model's feature extractor.

    Returns:
        float32 array of shape (n,).

    Raises:
        MediaDecodeError: If the bytes are not decodable audio.
    """
    if not data:
        raise MediaDecodeError("Audio file is empty.")
    try:
        samples, _ = librosa.load(io.BytesIO(data), sr=sampling_rate, mono=False, dtype=np.float32)
    except Exception as exc:
        raise MediaDecodeError(f"Could not decode audio: {exc}") from exc
    mono = downmix_to_mono(samples)
    logger.debug("Decoded audio: %d samples at %d Hz", mono.shape[0], sampling_rate)
    return mono
