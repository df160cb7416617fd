# =============================================================================
# Station Inference - Pose Estimation Pipeline
# =============================================================================
# Processes one encoded frame at a time, with no state carried across frames:
#
#   IDLE -> PREPROCESSING -> INFERENCE -> POSTPROCESSING -> RENDERED
#
#   - Preprocessing: decode, resize (aspect ratio not preserved) to the model
#     input resolution, scale to [0, 1], reorder to planar CHW with a batch dim.
#   - Inference: one forward pass -> [1, channels, numBoxes] where each box
#     column is (cx, cy, w, h, confidence, 17 x (x, y, confidence)).
#   - Postprocessing: keep only the most confident box (single subject, no
#     NMS); discard it below the box threshold; rescale its keypoints from
#     model space to the original image.
#   - Rendering: draw filled circles on keypoints above the keypoint threshold
#     and re-encode as JPEG.
# =============================================================================

import io
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple

import numpy as np
from PIL import Image, ImageDraw

from server.errors import PoseFrameError

logger = logging.getLogger(__name__)

NUM_KEYPOINTS = 17
_BOX_FIELDS = 5  # cx, cy, w, h, confidence
KEYPOINT_COLOR = "#00FF00"


class FrameStage(Enum):
    IDLE = "idle"
    PREPROCESSING = "preprocessing"
    INFERENCE = "inference"
    POSTPROCESSING = "postprocessing"
    RENDERED = "rendered"


@dataclass
class Keypoint:
    x: float
    y: float
    confidence: float


@dataclass
class PoseDetection:
    """
    The retained detection of one frame, in original image coordinates.

    Attributes:
        box:       (x, y, w, h, confidence) with x, y the box centre.
        keypoints: The 17 keypoints of the detected person.
    """

    box: Tuple[float, float, float, float, float]
    keypoints: List[Keypoint]


def decode_frame(frame: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(frame))
    image.load()
    return image.convert("RGB")


def preprocess(image: Image.Image, input_size: Tuple[int, int]) -> np.ndarray:
    """
    Build the model input tensor for one image.

    Args:
        image:      RGB image of any size.
        input_size: (width, height) of the model input.

    Returns:
        float32 array of shape (1, 3, height, width) with values in [0, 1].
    """
    resized = image.resize(input_size, Image.BILINEAR)
    pixels = np.asarray(resized, dtype=np.float32) / 255.0  # (H, W, 3)
    return np.ascontiguousarray(pixels.transpose(2, 0, 1)[np.newaxis, ...])


def postprocess(
    output: np.ndarray,
    original_size: Tuple[int, int],
    input_size: Tuple[int, int],
    box_threshold: float = 0.25,
) -> Optional[PoseDetection]:
    """
    Select the most confident detection and map it to the original image.

    Args:
        output:        Model output of shape (1, channels, numBoxes).
        original_size: (width, height) of the decoded frame.
        input_size:    (width, height) of the model input.
        box_threshold: Minimum confidence for the retained box.

    Returns:
        The retained PoseDetection, or None when no box reaches the threshold.
    """
    boxes = np.asarray(output)[0].T  # (numBoxes, channels)
    if boxes.shape[0] == 0:
        return None

    best = boxes[int(np.argmax(boxes[:, 4]))]
    confidence = float(best[4])
    if confidence < box_threshold:
        return None

    scale_x = original_size[0] / input_size[0]
    scale_y = original_size[1] / input_size[1]

    keypoints = []
    raw = best[_BOX_FIELDS:_BOX_FIELDS + NUM_KEYPOINTS * 3].reshape(NUM_KEYPOINTS, 3)
    for kx, ky, kconf in raw:
        keypoints.append(Keypoint(x=float(kx) * scale_x, y=float(ky) * scale_y, confidence=float(kconf)))

    box = (
        float(best[0]) * scale_x,
        float(best[1]) * scale_y,
        float(best[2]) * scale_x,
        float(best[3]) * scale_y,
        confidence,
    )
    return PoseDetection(box=box, keypoints=keypoints)


def render(
    image: Image.Image,
    keypoints: List[Keypoint],
    keypoint_threshold: float = 0.5,
    radius: int = 5,
    jpeg_quality: int = 90,
) -> bytes:
    """Draw confident keypoints on a copy of image and encode it as JPEG."""
    canvas = image.copy()
    draw = ImageDraw.Draw(canvas)
    for point in keypoints:
        if point.confidence > keypoint_threshold:
            draw.ellipse(
                (point.x - radius, point.y - radius, point.x + radius, point.y + radius),
                fill=KEYPOINT_COLOR,
            )
    buffer = io.BytesIO()
    canvas.save(buffer, format="JPEG", quality=jpeg_quality)
    return buffer.getvalue()


class PosePipeline:
    """
    Frame-in, annotated-frame-out pose estimation.

    Args:
        pose_provider: Returns the loaded pose model; raises ModelNotReadyError
                       when it is not loaded (checked before any work).
        config:        Config with pose input size, thresholds and JPEG quality.
    """

    def __init__(self, pose_provider: Callable[[], object], config):
        self._pose_provider = pose_provider
        self._input_size = (config.pose_input_width, config.pose_input_height)
        self._box_threshold = config.pose_box_threshold
        self._keypoint_threshold = config.pose_keypoint_threshold
        self._radius = config.pose_keypoint_radius
        self._jpeg_quality = config.jpeg_quality

    def detect(self, frame: bytes) -> Tuple[Image.Image, Optional[PoseDetection]]:
        """Run the frame through preprocessing, inference and postprocessing."""
        model = self._pose_provider()

        stage = FrameStage.PREPROCESSING
        try:
            image = decode_frame(frame)
            tensor = preprocess(image, self._input_size)

            stage = FrameStage.INFERENCE
            output = model.run(tensor)

            stage = FrameStage.POSTPROCESSING
            detection = postprocess(output, image.size, self._input_size, self._box_threshold)
        except Exception as exc:
            raise PoseFrameError(stage, str(exc)) from exc
        return image, detection

    def estimate(self, frame: bytes) -> bytes:
        """
        Annotate one encoded frame.

        Raises:
            ModelNotReadyError: If the pose model is not loaded.
            PoseFrameError:     If any stage fails for this frame.
        """
        image, detection = self.detect(frame)
        keypoints = detection.keypoints if detection is not None else []
        try:
            annotated = render(
                image,
                keypoints,
                keypoint_threshold=self._keypoint_threshold,
                radius=self._radius,
                jpeg_quality=self._jpeg_quality,
            )
        except Exception as exc:
            raise PoseFrameError(FrameStage.RENDERED, str(exc)) from exc
        logger.debug(
            "Frame %dx%d -> %d keypoints",
            image.width, image.height, len(keypoints),
        )
        return annotated
