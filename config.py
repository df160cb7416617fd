# =============================================================================
# Station Inference - Centralized Configuration
# =============================================================================
# Provides a single Config dataclass containing all tunable parameters for
# the local inference server and its client. Parameters are overridable via
# environment variables with the STATION_ prefix
# (e.g., STATION_SERVER_PORT=3011).
# =============================================================================

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import torch

# Project root directory (where this file lives)
_PROJECT_ROOT = str(Path(__file__).parent.resolve())


def _detect_device() -> str:
    """
    Auto-detect the best available compute device.

    Returns:
        str: "mps" on Apple Silicon, "cuda" on NVIDIA GPUs, "cpu" as fallback.
    """
    if torch.backends.mps.is_available():
        return "mps"
    elif torch.cuda.is_available():
        return "cuda"
    return "cpu"


def _resolve_dtype(dtype_str: str) -> torch.dtype:
    """
    Convert a string dtype name to a torch.dtype.

    Args:
        dtype_str: One of "float16", "float32", "bfloat16".

    Returns:
        The corresponding torch.dtype.
    """
    dtype_map = {
        "float16": torch.float16,
        "float32": torch.float32,
        "bfloat16": torch.bfloat16,
    }
    return dtype_map.get(dtype_str, torch.float32)


@dataclass
class Config:
    """
    Centralized configuration for the Station inference server.

    All fields can be overridden via environment variables prefixed with STATION_.
    """

    # -- Networking --
    server_host: str = "127.0.0.1"
    server_port: int = 3010
    cors_origins: str = "*"  # Comma-separated list

    # -- Vision-language model (processor + weights directory) --
    vision_model_path: str = field(
        default_factory=lambda: os.path.join(_PROJECT_ROOT, "models", "gemma-3n-E2B-it")
    )
    max_new_tokens: int = 32000
    generation_wait_timeout_seconds: float = 30.0

    # -- Pose model (single ONNX file) --
    pose_model_path: str = field(
        default_factory=lambda: os.path.join(_PROJECT_ROOT, "models", "pose.onnx")
    )
    pose_input_width: int = 640
    pose_input_height: int = 640
    pose_box_threshold: float = 0.25
    pose_keypoint_threshold: float = 0.5
    pose_keypoint_radius: int = 5
    jpeg_quality: int = 90

    # -- OCR --
    ocr_language: str = "eng"

    # -- Media --
    image_fetch_timeout_seconds: float = 10.0

    # -- Storage --
    uploads_dir: str = field(
        default_factory=lambda: os.path.join(_PROJECT_ROOT, "uploads")
    )

    # -- Compute --
    device: str = field(default_factory=_detect_device)
    torch_dtype_str: str = "float32"

    # -- Logging --
    log_level: str = "INFO"

    # -- Derived (computed post-init) --
    server_url: str = field(init=False)
    torch_dtype: torch.dtype = field(init=False)

    def __post_init__(self):
        """Apply environment variable overrides and compute derived fields."""
        self._apply_env_overrides()
        self.refresh_derived()

    def refresh_derived(self):
        """Recompute fields that depend on other fields (call after mutating them)."""
        self.server_url = f"http://{self._public_host()}:{self.server_port}"
        self.torch_dtype = _resolve_dtype(self.torch_dtype_str)

    def _public_host(self) -> str:
        # A wildcard bind address is not fetchable by clients; advertise loopback instead.
        if self.server_host in ("0.0.0.0", "::", ""):
            return "localhost"
        return self.server_host

    @property
    def uploads_url(self) -> str:
        """Base URL under which stored uploads are served."""
        return f"{self.server_url}/uploads"

    @property
    def cors_origin_list(self):
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    def _apply_env_overrides(self):
        """
        Override config fields from environment variables.

        Looks for STATION_<FIELD_NAME_UPPERCASE> environment variables and
        applies them with appropriate type conversion.
        """
        field_types = {
            "server_host": str,
            "server_port": int,
            "cors_origins": str,
            "vision_model_path": str,
            "max_new_tokens": int,
            "generation_wait_timeout_seconds": float,
            "pose_model_path": str,
            "pose_input_width": int,
            "pose_input_height": int,
            "pose_box_threshold": float,
            "pose_keypoint_threshold": float,
            "pose_keypoint_radius": int,
            "jpeg_quality": int,
            "ocr_language": str,
            "image_fetch_timeout_seconds": float,
            "uploads_dir": str,
            "device": str,
            "torch_dtype_str": str,
            "log_level": str,
        }
        for field_name, field_type in field_types.items():
            env_key = f"STATION_{field_name.upper()}"
            env_value = os.environ.get(env_key)
            if env_value is not None:
                setattr(self, field_name, field_type(env_value))


# ---------------------------------------------------------------------------
# Singleton accessor
# ---------------------------------------------------------------------------
_config_instance: Optional[Config] = None


def get_config() -> Config:
    """
    Return the singleton Config instance, creating it on first call.

    Returns:
        Config: The global configuration object.
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config()
    return _config_instance
