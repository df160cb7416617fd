import io
import threading
from typing import List, Optional

import numpy as np
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from config import Config
from server.app import create_app
from server.model_host import ModelHost
from server.pose import NUM_KEYPOINTS


class TensorLedger:
    """Counts constructions and disposals of FakeTensor instances."""

    def __init__(self):
        self.constructed = 0
        self.disposed = 0

    @property
    def balanced(self) -> bool:
        return self.constructed == self.disposed


class FakeTensor:
    def __init__(self, ledger: TensorLedger, name: str, fail_dispose: bool = False):
        self.name = name
        self.fail_dispose = fail_dispose
        self._ledger = ledger
        self.is_disposed = False
        ledger.constructed += 1

    def dispose(self):
        if self.is_disposed:
            raise AssertionError(f"{self.name} disposed twice")
        if self.fail_dispose:
            raise RuntimeError(f"{self.name} could not be freed")
        self.is_disposed = True
        self._ledger.disposed += 1


class FakeVisionModel:
    """Stands in for VisionLanguageModel; emits a fixed list of fragments."""

    sampling_rate = 16000

    def __init__(
        self,
        fragments=("Hel", "lo"),
        fail_at: Optional[int] = None,
        wait_for_stop: bool = False,
        fail_build: bool = False,
    ):
        self.fragments = list(fragments)
        self.fail_at = fail_at
        self.wait_for_stop = wait_for_stop
        self.fail_build = fail_build
        self.ledger = TensorLedger()
        self.rendered: List[list] = []
        self.built: List[tuple] = []
        self.generate_calls = 0

    def render_prompt(self, messages):
        self.rendered.append(messages)
        return "<prompt>"

    def build_inputs(self, prompt, image=None, audio=None):
        self.built.append((prompt, image, audio))
        if self.fail_build:
            raise RuntimeError("processor exploded")
        tensors = {
            "input_ids": FakeTensor(self.ledger, "input_ids"),
            "attention_mask": FakeTensor(self.ledger, "attention_mask"),
        }
        if image is not None:
            tensors["pixel_values"] = FakeTensor(self.ledger, "pixel_values")
        if audio is not None:
            tensors["input_features"] = FakeTensor(self.ledger, "input_features")
        return tensors

    def generate(self, inputs, on_text, stop_event: threading.Event):
        self.generate_calls += 1
        for index, fragment in enumerate(self.fragments):
            if stop_event.is_set():
                return
            if self.fail_at == index:
                raise RuntimeError("model exploded")
            on_text(fragment)
            if self.wait_for_stop:
                stop_event.wait(timeout=5)


def make_pose_output(
    confidences,
    keypoint=(320.0, 320.0, 0.9),
    best_keypoints=None,
) -> np.ndarray:
    """Model output of shape (1, 5 + 17*3, len(confidences))."""
    channels = 5 + NUM_KEYPOINTS * 3
    output = np.zeros((1, channels, len(confidences)), dtype=np.float32)
    for column, confidence in enumerate(confidences):
        output[0, 0:4, column] = (320.0, 320.0, 100.0, 200.0)
        output[0, 4, column] = confidence
        points = best_keypoints or [keypoint] * NUM_KEYPOINTS
        for index, (x, y, c) in enumerate(points):
            output[0, 5 + index * 3: 8 + index * 3, column] = (x, y, c)
    return output


class FakePoseModel:
    def __init__(self, output: Optional[np.ndarray] = None):
        self.output = output if output is not None else make_pose_output([0.9])
        self.input_shapes = []

    def run(self, tensor):
        self.input_shapes.append(tensor.shape)
        return self.output


class FakeOcr:
    def __init__(self, text: str = "INVOICE 42"):
        self.text = text
        self.calls = 0

    def extract_text(self, image_bytes: bytes) -> str:
        self.calls += 1
        return self.text


def encode_image(size=(64, 48), color=(200, 30, 30), fmt="PNG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def config(tmp_path):
    return Config(
        server_host="127.0.0.1",
        server_port=3010,
        vision_model_path=str(tmp_path / "missing-vision"),
        pose_model_path=str(tmp_path / "missing-pose.onnx"),
        uploads_dir=str(tmp_path / "uploads"),
        generation_wait_timeout_seconds=0.2,
        device="cpu",
    )


@pytest.fixture
def vision():
    return FakeVisionModel()


@pytest.fixture
def pose_model():
    return FakePoseModel()


@pytest.fixture
def ocr():
    return FakeOcr()


@pytest.fixture
def host(config, vision, pose_model):
    model_host = ModelHost(config)
    model_host.vision = vision
    model_host.pose = pose_model
    return model_host


@pytest.fixture
def app(config, host, ocr):
    return create_app(config=config, host=host, ocr=ocr, load_models=False)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client
