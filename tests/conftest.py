import sys
from pathlib import Path

import pytest

# Add repository root to sys.path so the project packages import in tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fakes import FakeLlama, MeanPool  # noqa: E402
from generation.session import GenerationSession, SamplingParams  # noqa: E402
from recognition.context import RecognitionContext  # noqa: E402
from recognition.embedding import EmbeddingModel  # noqa: E402
from recognition.preprocess import ImagePreprocessor  # noqa: E402
from recognition.similarity import SimilarityIndex  # noqa: E402
from shared.schemas import ArtworkMetadata  # noqa: E402


@pytest.fixture
def color_index():
    """Catalog with one axis-aligned vector per primary color."""
    index = SimilarityIndex()
    index.add("red", [1.0, 0.0, 0.0], ArtworkMetadata(title="Red Square", author="K. Malevich"))
    index.add("green", [0.0, 1.0, 0.0], ArtworkMetadata(title="Green Field"))
    return index


@pytest.fixture
def mean_pool_model():
    """3-d embedding model returning the per-channel mean of the input."""
    return EmbeddingModel(MeanPool(), embedding_dim=3)


@pytest.fixture
def recognition_context(mean_pool_model, color_index):
    context = RecognitionContext(
        preprocessor=ImagePreprocessor(target_size=32, normalization="unit", layout="chw"),
        model_loader=lambda: mean_pool_model,
        catalog_loader=lambda: color_index,
    )
    assert context.initialize()
    yield context
    context.shutdown()


@pytest.fixture
def model_file(tmp_path):
    path = tmp_path / "docent.gguf"
    path.write_bytes(b"GGUF")
    return str(path)


@pytest.fixture
def make_session(model_file):
    """Factory for sessions backed by FakeLlama, loaded and optionally initialized."""
    sessions = []

    def _make(reply="The painting is oil on canvas.", init=True, decode=True,
              require_system_prompt=True, max_tokens=256, n_ctx=2048, **fake_kwargs):
        session = GenerationSession(
            sampling=SamplingParams(max_tokens=max_tokens, seed=7),
            n_ctx=n_ctx,
            require_system_prompt=require_system_prompt,
            llama_factory=lambda **kwargs: FakeLlama(reply=reply, **fake_kwargs, **kwargs),
        )
        assert session.load_model(model_file)
        if init:
            assert session.init_session()
            if decode:
                assert session.decode_system_prompt()
        sessions.append(session)
        return session

    yield _make
    for session in sessions:
        session.unload_model()
