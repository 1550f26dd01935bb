import threading

import numpy as np
import pytest
import torch
import torch.nn as nn

from recognition.embedding import EmbeddingModel, l2_normalize
from recognition.preprocess import ChannelLayout, ImagePreprocessor
from shared.errors import DimensionMismatch, InferenceError, ModelLoadError

from fakes import Broken, MeanPool, MeanPoolHWC, solid_image


class Constant(nn.Module):
    def __init__(self, values):
        super().__init__()
        self.register_buffer("values", torch.tensor([values], dtype=torch.float32))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.values


def _chw(size=8, color=(255, 0, 0)):
    return ImagePreprocessor(target_size=size, normalization="unit", layout="chw")(
        solid_image(size, size, color)
    )


def test_l2_normalize_unit_norm():
    vector = l2_normalize(np.array([3.0, 4.0]))
    assert vector.dtype == np.float32
    assert float(np.linalg.norm(vector)) == pytest.approx(1.0, abs=1e-6)
    np.testing.assert_allclose(vector, [0.6, 0.8], rtol=1e-6)


def test_l2_normalize_near_zero_returned_unchanged():
    tiny = np.array([1e-10, 0.0, 0.0], dtype=np.float32)
    np.testing.assert_array_equal(l2_normalize(tiny), tiny)
    np.testing.assert_array_equal(l2_normalize(np.zeros(4)), np.zeros(4))


def test_infer_returns_normalized_vector():
    model = EmbeddingModel(MeanPool(), embedding_dim=3)
    vector = model.infer(_chw(color=(255, 0, 0)))

    assert vector.shape == (3,)
    assert vector.dtype == np.float32
    np.testing.assert_allclose(vector, [1.0, 0.0, 0.0], atol=1e-6)


def test_infer_keeps_output_when_model_already_normalizes():
    model = EmbeddingModel(Constant([0.5, 0.5, 0.0]), embedding_dim=3, produces_normalized_output=True)
    np.testing.assert_allclose(model.infer(_chw()), [0.5, 0.5, 0.0])


def test_zero_output_is_not_divided():
    model = EmbeddingModel(Constant([0.0, 0.0, 0.0]), embedding_dim=3)
    np.testing.assert_array_equal(model.infer(_chw()), [0.0, 0.0, 0.0])


def test_hwc_model():
    model = EmbeddingModel(MeanPoolHWC(), embedding_dim=3, layout=ChannelLayout.HWC)
    tensor = ImagePreprocessor(target_size=8, normalization="unit", layout="hwc")(
        solid_image(8, 8, (0, 255, 0))
    )
    np.testing.assert_allclose(model.infer(tensor), [0.0, 1.0, 0.0], atol=1e-6)


def test_wrong_layout_tensor_is_rejected():
    model = EmbeddingModel(MeanPool(), embedding_dim=3)
    hwc = np.zeros((8, 8, 3), dtype=np.float32)
    with pytest.raises(InferenceError):
        model.infer(hwc)
    with pytest.raises(InferenceError):
        model.infer(np.zeros((3, 8), dtype=np.float32))


def test_output_dimension_mismatch():
    model = EmbeddingModel(MeanPool(), embedding_dim=128)
    with pytest.raises(DimensionMismatch) as excinfo:
        model.infer(_chw())
    assert excinfo.value.expected == 128
    assert excinfo.value.actual == 3
    assert excinfo.value.code == "DIMENSION_MISMATCH"


def test_forward_failure_becomes_inference_error():
    model = EmbeddingModel(Broken(), embedding_dim=3)
    with pytest.raises(InferenceError):
        model.infer(_chw())


def test_non_finite_output_is_rejected():
    model = EmbeddingModel(Constant([float("nan"), 0.0, 1.0]), embedding_dim=3)
    with pytest.raises(InferenceError):
        model.infer(_chw())


def test_close_is_idempotent_and_blocks_inference():
    model = EmbeddingModel(MeanPool(), embedding_dim=3)
    model.close()
    model.close()
    assert not model.is_loaded
    with pytest.raises(InferenceError):
        model.infer(_chw())


def test_context_manager_releases_handle():
    with EmbeddingModel(MeanPool(), embedding_dim=3) as model:
        assert model.is_loaded
    assert not model.is_loaded


def test_load_torchscript_archive(tmp_path):
    path = tmp_path / "embedder.pt"
    torch.jit.save(torch.jit.script(MeanPool()), str(path))

    model = EmbeddingModel.load_from(str(path), embedding_dim=3)

    assert model.name == "embedder.pt"
    np.testing.assert_allclose(model.infer(_chw(color=(0, 0, 255))), [0.0, 0.0, 1.0], atol=1e-6)
    model.close()


def test_load_missing_model(tmp_path):
    with pytest.raises(ModelLoadError):
        EmbeddingModel.load_from(str(tmp_path / "missing.pt"), embedding_dim=3)


def test_load_corrupt_model(tmp_path):
    path = tmp_path / "corrupt.pt"
    path.write_bytes(b"not a torchscript archive")
    with pytest.raises(ModelLoadError):
        EmbeddingModel.load_from(str(path), embedding_dim=3)


def test_unsupported_backend(tmp_path):
    with pytest.raises(ModelLoadError):
        EmbeddingModel.load_from(str(tmp_path / "x.onnx"), embedding_dim=3, backend="onnx")


def test_clip_backend_requires_chw():
    with pytest.raises(ModelLoadError):
        EmbeddingModel.load_from("openai/clip-vit-base-patch32", embedding_dim=512,
                                 layout=ChannelLayout.HWC, backend="clip")


def test_concurrent_inference_is_serialized():
    model = EmbeddingModel(MeanPool(), embedding_dim=3)
    tensor = _chw(color=(255, 0, 0))
    results = []

    def worker():
        for _ in range(10):
            results.append(model.infer(tensor))

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 40
    for vector in results:
        np.testing.assert_allclose(vector, [1.0, 0.0, 0.0], atol=1e-6)
