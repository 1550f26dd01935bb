import numpy as np
import pytest

from recognition.context import RecognitionContext
from recognition.embedding import EmbeddingModel
from recognition.pipeline import RecognitionPipeline, RecognitionState
from recognition.preprocess import ImagePreprocessor
from recognition.similarity import SimilarityIndex
from shared.errors import ModelLoadError

from fakes import Broken, MeanPool, MeanPoolHWC, solid_image


@pytest.fixture
def pipeline(recognition_context):
    pipeline = RecognitionPipeline(recognition_context, threshold=0.4, top_k=0)
    yield pipeline
    pipeline.close()


def _context(model_loader, index=None, layout="chw"):
    return RecognitionContext(
        preprocessor=ImagePreprocessor(target_size=16, normalization="unit", layout=layout),
        model_loader=model_loader,
        catalog_loader=lambda: index if index is not None else SimilarityIndex(),
    )


def test_matching_image(pipeline):
    outcome = pipeline.recognize(solid_image(60, 30, (255, 0, 0)))

    assert outcome.state is RecognitionState.MATCHED
    assert outcome.matched
    assert outcome.match.identifier == "red"
    assert outcome.match.score == pytest.approx(1.0, abs=1e-5)
    assert outcome.match.record.metadata.title == "Red Square"
    assert outcome.error is None
    assert set(outcome.timings_ms) == {"preprocess", "embed", "search"}
    assert outcome.canvas.size == (32, 32)
    assert pipeline.state is RecognitionState.MATCHED


def test_unknown_image_is_no_match(pipeline):
    outcome = pipeline.recognize(solid_image(30, 60, (0, 0, 255)))

    assert outcome.state is RecognitionState.NO_MATCH
    assert outcome.match is None
    assert outcome.error is None


def test_candidates_are_ranked(pipeline):
    outcome = pipeline.recognize(solid_image(20, 20, (255, 60, 0)), top_k=5)

    assert [identifier for identifier, _ in outcome.candidates] == ["red", "green"]
    assert outcome.candidates[0][1] > outcome.candidates[1][1]


def test_invalid_image_fails_with_code(pipeline):
    outcome = pipeline.recognize(None)

    assert outcome.state is RecognitionState.FAILED
    assert outcome.error_code == "INVALID_IMAGE"
    assert outcome.timings_ms == {}

    empty = pipeline.recognize(np.zeros((0, 0, 3), dtype=np.uint8))
    assert empty.error_code == "INVALID_IMAGE"


def test_model_load_failure_is_reported_per_request():
    def failing_loader():
        raise ModelLoadError("models/art_embedder.pt not found")

    context = _context(failing_loader)
    assert context.initialize() is False
    assert not context.is_ready()

    outcome = RecognitionPipeline(context, threshold=0.4).recognize(solid_image(8, 8, (1, 2, 3)))

    assert outcome.state is RecognitionState.FAILED
    assert outcome.error_code == "MODEL_LOAD_ERROR"
    assert "not found" in str(outcome.error)


def test_recognize_before_initialize_fails():
    context = _context(lambda: EmbeddingModel(MeanPool(), embedding_dim=3))
    outcome = RecognitionPipeline(context, threshold=0.4).recognize(solid_image(8, 8, (1, 2, 3)))
    assert outcome.error_code == "MODEL_LOAD_ERROR"


def test_layout_mismatch_is_a_load_error():
    context = _context(
        lambda: EmbeddingModel(MeanPoolHWC(), embedding_dim=3, layout="hwc"), layout="chw",
    )
    assert context.initialize() is False
    assert isinstance(context.load_error, ModelLoadError)


def test_catalog_dimension_mismatch_fails():
    index = SimilarityIndex()
    index.add("wide", [1.0, 0.0, 0.0, 0.0])
    context = _context(lambda: EmbeddingModel(MeanPool(), embedding_dim=3), index=index)
    assert context.initialize()

    outcome = RecognitionPipeline(context, threshold=0.4).recognize(solid_image(8, 8, (255, 0, 0)))

    assert outcome.state is RecognitionState.FAILED
    assert outcome.error_code == "DIMENSION_MISMATCH"
    context.shutdown()


def test_inference_failure():
    context = _context(lambda: EmbeddingModel(Broken(), embedding_dim=3))
    assert context.initialize()

    outcome = RecognitionPipeline(context, threshold=0.4).recognize(solid_image(8, 8, (0, 0, 0)))

    assert outcome.error_code == "INFERENCE_ERROR"
    assert "preprocess" in outcome.timings_ms
    context.shutdown()


def test_empty_catalog_never_matches():
    context = _context(lambda: EmbeddingModel(MeanPool(), embedding_dim=3))
    assert context.initialize()

    outcome = RecognitionPipeline(context, threshold=0.0).recognize(solid_image(8, 8, (255, 0, 0)))

    assert outcome.state is RecognitionState.NO_MATCH
    context.shutdown()


def test_recognize_async(pipeline):
    future = pipeline.recognize_async(solid_image(40, 40, (0, 255, 0)))
    outcome = future.result(timeout=10)

    assert outcome.state is RecognitionState.MATCHED
    assert outcome.match.identifier == "green"


def test_shutdown_releases_model(recognition_context, mean_pool_model):
    recognition_context.shutdown()
    assert not recognition_context.is_ready()
    assert not mean_pool_model.is_loaded
    assert len(recognition_context.index) == 0
    recognition_context.shutdown()
