import io

import numpy as np
import pytest
from conftest import FakePoseModel, encode_image, make_pose_output
from PIL import Image

from server.errors import ModelNotReadyError, PoseFrameError
from server.pose import (
    NUM_KEYPOINTS,
    FrameStage,
    Keypoint,
    PosePipeline,
    postprocess,
    preprocess,
    render,
)


class TestPreprocess:
    def test_shape_layout_and_range(self):
        image = Image.new("RGB", (100, 50), (255, 0, 0))
        tensor = preprocess(image, (640, 640))
        assert tensor.shape == (1, 3, 640, 640)
        assert tensor.dtype == np.float32
        assert tensor.max() <= 1.0 and tensor.min() >= 0.0
        assert np.allclose(tensor[0, 0], 1.0)
        assert np.allclose(tensor[0, 1:], 0.0)


class TestPostprocess:
    def test_box_below_threshold_is_discarded(self):
        assert postprocess(make_pose_output([0.24]), (640, 640), (640, 640)) is None

    def test_box_above_threshold_is_kept(self):
        detection = postprocess(make_pose_output([0.26]), (640, 640), (640, 640))
        assert detection is not None
        assert detection.box[4] == pytest.approx(0.26)

    def test_most_confident_box_wins(self):
        output = make_pose_output([0.3, 0.8, 0.5])
        output[0, 5, 1] = 111.0
        detection = postprocess(output, (640, 640), (640, 640))
        assert detection.keypoints[0].x == pytest.approx(111.0)

    def test_keypoints_are_rescaled_to_the_original_image(self):
        detection = postprocess(make_pose_output([0.9]), (1280, 960), (640, 640))
        assert len(detection.keypoints) == NUM_KEYPOINTS
        first = detection.keypoints[0]
        assert (first.x, first.y) == pytest.approx((640.0, 480.0))
        assert first.confidence == pytest.approx(0.9)

    def test_no_boxes(self):
        output = np.zeros((1, 5 + NUM_KEYPOINTS * 3, 0), dtype=np.float32)
        assert postprocess(output, (640, 640), (640, 640)) is None


class TestRender:
    def test_confident_keypoint_is_drawn_green(self):
        image = Image.new("RGB", (100, 100), (0, 0, 0))
        encoded = render(image, [Keypoint(50, 50, 0.9)], radius=5)
        assert encoded[:2] == b"\xff\xd8"
        r, g, b = Image.open(io.BytesIO(encoded)).convert("RGB").getpixel((50, 50))
        assert g > 200 and r < 80 and b < 80

    def test_keypoint_at_threshold_is_not_drawn(self):
        image = Image.new("RGB", (100, 100), (0, 0, 0))
        encoded = render(image, [Keypoint(50, 50, 0.5)], keypoint_threshold=0.5)
        _, g, _ = Image.open(io.BytesIO(encoded)).convert("RGB").getpixel((50, 50))
        assert g < 40

    def test_source_image_is_not_modified(self):
        image = Image.new("RGB", (20, 20), (0, 0, 0))
        render(image, [Keypoint(10, 10, 1.0)])
        assert image.getpixel((10, 10)) == (0, 0, 0)


class TestPosePipeline:
    def test_estimate_returns_annotated_jpeg_at_original_size(self, config):
        model = FakePoseModel()
        pipeline = PosePipeline(lambda: model, config)
        annotated = pipeline.estimate(encode_image(size=(320, 240)))
        decoded = Image.open(io.BytesIO(annotated))
        assert decoded.format == "JPEG"
        assert decoded.size == (320, 240)
        assert model.input_shapes == [(1, 3, 640, 640)]

    def test_low_confidence_frame_is_returned_unannotated(self, config):
        model = FakePoseModel(make_pose_output([0.1]))
        pipeline = PosePipeline(lambda: model, config)
        image, detection = pipeline.detect(encode_image())
        assert detection is None
        assert pipeline.estimate(encode_image())[:2] == b"\xff\xd8"

    def test_model_not_ready_is_raised_before_decoding(self, config):
        def not_ready():
            raise ModelNotReadyError("Pose estimation model is not loaded yet.")

        with pytest.raises(ModelNotReadyError):
            PosePipeline(not_ready, config).estimate(b"garbage")

    def test_undecodable_frame_fails_in_preprocessing(self, config):
        pipeline = PosePipeline(FakePoseModel, config)
        with pytest.raises(PoseFrameError) as info:
            pipeline.estimate(b"not an image")
        assert info.value.stage is FrameStage.PREPROCESSING

    def test_model_failure_is_reported_as_inference_stage(self, config):
        class Broken:
            def run(self, tensor):
                raise RuntimeError("bad session")

        with pytest.raises(PoseFrameError) as info:
            PosePipeline(Broken, config).estimate(encode_image())
        assert info.value.stage is FrameStage.INFERENCE
