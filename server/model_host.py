# =============================================================================
# Station Inference - Model Host
# =============================================================================
# Owns the two models served by this process:
#   - A vision-language chat model (Gemma 3n) loaded through the HuggingFace
#     AutoProcessor / AutoModelForImageTextToText pair from a local directory.
#   - A YOLO-style pose estimation model run through onnxruntime.
#
# Both are loaded exactly once at startup. A missing path or a failing load
# raises ModelLoadError, which aborts startup.
#
# Request handlers never touch raw model internals; they call the capability
# methods exposed here (render_prompt, build_inputs, generate, run).
# =============================================================================

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
import onnxruntime as ort
import torch
from transformers import (
    AutoModelForImageTextToText,
    AutoProcessor,
    StoppingCriteria,
    StoppingCriteriaList,
    TextStreamer,
)

from server.errors import ModelLoadError, ModelNotReadyError

logger = logging.getLogger(__name__)


@dataclass
class LoadProgress:
    """Progress report for one loading phase (display only)."""

    phase: str
    bytes_loaded: int
    bytes_total: int

    @property
    def fraction(self) -> float:
        if self.bytes_total <= 0:
            return 0.0
        return self.bytes_loaded / self.bytes_total


@dataclass
class HealthStatus:
    vision_ready: bool
    pose_ready: bool

    @property
    def all_ready(self) -> bool:
        return self.vision_ready and self.pose_ready


ProgressCallback = Callable[[LoadProgress], None]


def log_progress(progress: LoadProgress) -> None:
    """Default progress callback: log loaded MB and percentage."""
    if progress.bytes_total > 0:
        logger.info(
            "Loading %s: [%.2f%%] (%.2fMB / %.2fMB)",
            progress.phase,
            progress.fraction * 100.0,
            progress.bytes_loaded / 1024 / 1024,
            progress.bytes_total / 1024 / 1024,
        )
    else:
        logger.info("Loading %s...", progress.phase)


WEIGHT_SUFFIXES = (".safetensors", ".bin", ".pt", ".pth", ".gguf")


def _path_size(path: str, suffixes: Optional[Tuple[str, ...]] = None) -> int:
    """
    Total size in bytes of a file or of every file below a directory.

    Args:
        path:     File or directory.
        suffixes: Only count files ending in one of these (all files if None).
    """
    if os.path.isfile(path):
        return os.path.getsize(path)
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            if suffixes is not None and not name.endswith(suffixes):
                continue
            try:
                total += os.path.getsize(os.path.join(root, name))
            except OSError:
                continue
    return total


# ---------------------------------------------------------------------------
# Streaming / cancellation hooks for transformers.generate
# ---------------------------------------------------------------------------


class CallbackTextStreamer(TextStreamer):
    """TextStreamer that hands each finalized text fragment to a callback."""

    def __init__(self, tokenizer, on_text: Callable[[str], None], **decode_kwargs):
        super().__init__(tokenizer, skip_prompt=True, **decode_kwargs)
        self._on_text = on_text

    def on_finalized_text(self, text: str, stream_end: bool = False):
        if text:
            self._on_text(text)


class StopOnEvent(StoppingCriteria):
    """Stops generation at the next decoding step once the event is set."""

    def __init__(self, event: threading.Event):
        self._event = event

    def __call__(self, input_ids, scores, **kwargs):
        return torch.full(
            (input_ids.shape[0],),
            self._event.is_set(),
            dtype=torch.bool,
            device=input_ids.device,
        )


# ---------------------------------------------------------------------------
# Vision-language model
# ---------------------------------------------------------------------------


class VisionLanguageModel:
    """
    Local image/audio/text chat model.

    Args:
        model_path:        Directory holding the processor and model files.
        device:            Compute device ("mps", "cuda", "cpu").
        dtype:             Torch dtype for the model weights.
        max_new_tokens:    Upper bound on generated tokens per request.
        progress_callback: Receives LoadProgress for the processor and model phases.
    """

    def __init__(
        self,
        model_path: str,
        device: str = "cpu",
        dtype: torch.dtype = torch.float32,
        max_new_tokens: int = 32000,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.model_path = model_path
        self._device = device
        self._dtype = dtype
        self._max_new_tokens = max_new_tokens
        report = progress_callback or log_progress

        weights = _path_size(model_path, suffixes=WEIGHT_SUFFIXES)
        processor_files = _path_size(model_path) - weights

        report(LoadProgress("processor", 0, processor_files))
        self._processor = AutoProcessor.from_pretrained(model_path, local_files_only=True)
        report(LoadProgress("processor", processor_files, processor_files))

        report(LoadProgress("vision_model", 0, weights))
        self._model = AutoModelForImageTextToText.from_pretrained(
            model_path,
            torch_dtype=dtype,
            local_files_only=True,
        ).to(device)
        self._model.eval()
        report(LoadProgress("vision_model", weights, weights))

    @property
    def sampling_rate(self) -> int:
        """Audio sampling rate expected by the feature extractor."""
        return int(self._processor.feature_extractor.sampling_rate)

    def render_prompt(self, messages: List[Dict[str, Any]]) -> str:
        """Render a normalized message list through the chat template."""
        return self._processor.apply_chat_template(
            messages, tokenize=False, add_generation_prompt=True
        )

    def build_inputs(self, prompt: str, image=None, audio: Optional[np.ndarray] = None) -> Dict[str, Any]:
        """
        Build model input tensors for one request.

        The caller owns the returned tensors and must release them
        (see server.generation.InputTensors).
        """
        kwargs: Dict[str, Any] = {
            "text": prompt,
            "return_tensors": "pt",
            "add_special_tokens": False,
        }
        if image is not None:
            kwargs["images"] = image
        if audio is not None:
            kwargs["audio"] = audio
        batch = self._processor(**kwargs)
        # Floating point inputs follow the model dtype; ids and masks keep theirs.
        return dict(batch.to(self._device, dtype=self._dtype))

    @torch.inference_mode()
    def generate(
        self,
        inputs: Dict[str, Any],
        on_text: Callable[[str], None],
        stop_event: threading.Event,
    ) -> None:
        """
        Run greedy generation, streaming text fragments to on_text.

        Returns once generation ends: max_new_tokens reached, end of
        sequence, or stop_event set.
        """
        streamer = CallbackTextStreamer(
            self._processor.tokenizer, on_text, skip_special_tokens=True
        )
        self._model.generate(
            **inputs,
            max_new_tokens=self._max_new_tokens,
            do_sample=False,
            streamer=streamer,
            stopping_criteria=StoppingCriteriaList([StopOnEvent(stop_event)]),
        )


# ---------------------------------------------------------------------------
# Pose model
# ---------------------------------------------------------------------------


class PoseModel:
    """
    ONNX pose estimation model.

    Args:
        model_path: Path to the .onnx file.
        providers:  onnxruntime execution providers (CPU by default).
    """

    def __init__(self, model_path: str, providers: Optional[List[str]] = None):
        self.model_path = model_path
        self._session = ort.InferenceSession(
            model_path, providers=providers or ["CPUExecutionProvider"]
        )
        self._input_name = self._session.get_inputs()[0].name
        self._output_name = self._session.get_outputs()[0].name
        logger.info(
            "Pose session ready (input=%s, output=%s)", self._input_name, self._output_name
        )

    def run(self, tensor: np.ndarray) -> np.ndarray:
        """Single forward pass: [1, 3, H, W] float32 -> [1, channels, numBoxes]."""
        return self._session.run([self._output_name], {self._input_name: tensor})[0]


# ---------------------------------------------------------------------------
# Host
# ---------------------------------------------------------------------------


class ModelHost:
    """
    Holds the loaded models for the process lifetime.

    Args:
        config: The Config instance with model paths, device and dtype.
    """

    def __init__(self, config):
        self._config = config
        self.vision: Optional[VisionLanguageModel] = None
        self.pose: Optional[PoseModel] = None

    @property
    def vision_path(self) -> str:
        return self._config.vision_model_path

    @property
    def pose_path(self) -> str:
        return self._config.pose_model_path

    @property
    def is_initialized(self) -> bool:
        return self.vision is not None and self.pose is not None

    def initialize(self, progress_callback: Optional[ProgressCallback] = None) -> None:
        """
        Load the vision-language model and the pose model.

        Raises:
            ModelLoadError: If either path is absent or loading throws.
        """
        report = progress_callback or log_progress
        config = self._config

        for path, kind in ((self.vision_path, "Vision model directory"), (self.pose_path, "Pose model")):
            if not os.path.exists(path):
                raise ModelLoadError(f"{kind} not found: {path}")

        start = time.time()
        logger.info("Loading vision-language model from %s", self.vision_path)
        try:
            self.vision = VisionLanguageModel(
                model_path=self.vision_path,
                device=config.device,
                dtype=config.torch_dtype,
                max_new_tokens=config.max_new_tokens,
                progress_callback=report,
            )
        except Exception as exc:
            raise ModelLoadError(f"Failed to load vision model: {exc}") from exc
        logger.info("Vision-language model loaded in %.1fs", time.time() - start)

        pose_size = _path_size(self.pose_path)
        report(LoadProgress("pose_model", 0, pose_size))
        try:
            self.pose = PoseModel(self.pose_path)
        except Exception as exc:
            raise ModelLoadError(f"Failed to load pose model: {exc}") from exc
        report(LoadProgress("pose_model", pose_size, pose_size))
        logger.info("All models loaded.")

    def health(self) -> HealthStatus:
        return HealthStatus(vision_ready=self.vision is not None, pose_ready=self.pose is not None)

    def require_vision(self) -> VisionLanguageModel:
        if self.vision is None:
            raise ModelNotReadyError("Vision-language model is not loaded yet.")
        return self.vision

    def require_pose(self) -> PoseModel:
        if self.pose is None:
            raise ModelNotReadyError("Pose estimation model is not loaded yet.")
        return self.pose
