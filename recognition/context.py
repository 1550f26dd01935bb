# =============================================================================
# Art Docent - Recognition Context
# =============================================================================
# Owns the heavyweight recognition resources: the embedding model handle and
# the catalog index.  It is constructed explicitly and handed to the
# RecognitionPipeline, with an initialize() / shutdown() lifecycle and an
# is_ready() query instead of process-wide lazily-initialized state.
#
# Catalog problems never prevent startup (an empty catalog simply matches
# nothing); a model that fails to load leaves the context not ready, and the
# pipeline reports the stored ModelLoadError for every request.
# =============================================================================

import logging
import threading
from typing import Callable, Optional

from recognition.catalog import load_catalog
from recognition.embedding import EmbeddingModel
from recognition.preprocess import ImagePreprocessor
from recognition.similarity import SimilarityIndex, SimilarityMetric
from shared.errors import ModelLoadError

logger = logging.getLogger(__name__)


class RecognitionContext:
    """
    Lifecycle holder for the preprocessor, embedding model and catalog.

    Args:
        preprocessor:   Input contract of the embedding model.
        model_loader:   Callable returning a loaded EmbeddingModel (may raise
                        ModelLoadError).
        catalog_loader: Callable returning the SimilarityIndex.
    """

    def __init__(
        self,
        preprocessor: ImagePreprocessor,
        model_loader: Callable[[], EmbeddingModel],
        catalog_loader: Callable[[], SimilarityIndex],
    ):
        self.preprocessor = preprocessor
        self._model_loader = model_loader
        self._catalog_loader = catalog_loader
        self._lock = threading.Lock()

        self.model: Optional[EmbeddingModel] = None
        self.index: SimilarityIndex = SimilarityIndex()
        self.load_error: Optional[ModelLoadError] = None
        self._ready = False

    @classmethod
    def from_config(cls, config) -> "RecognitionContext":
        """Build a context whose loaders read the paths in ``config``."""
        return cls(
            preprocessor=ImagePreprocessor.from_config(config),
            model_loader=lambda: EmbeddingModel.from_config(config),
            catalog_loader=lambda: load_catalog(
                config.catalog_index_path,
                config.catalog_metadata_path,
                metric=SimilarityMetric(config.similarity_metric),
                dimension=config.embedding_dim,
            ),
        )

    def is_ready(self) -> bool:
        """Whether the model is loaded and recognition requests can run."""
        return self._ready

    def initialize(self) -> bool:
        """
        Load the catalog and the embedding model (once).

        Returns:
            True if the context is ready for recognition.
        """
        with self._lock:
            if self._ready:
                return True

            self.index = self._catalog_loader()
            logger.info("Catalog holds %d artworks", len(self.index))

            try:
                model = self._model_loader()
            except ModelLoadError as exc:
                logger.exception("Embedding model failed to load")
                self.load_error = exc
                return False

            if model.layout is not self.preprocessor.layout:
                model.close()
                self.load_error = ModelLoadError(
                    f"Model expects {model.layout.value.upper()} tensors but the "
                    f"preprocessor produces {self.preprocessor.layout.value.upper()}"
                )
                logger.error("%s", self.load_error)
                return False

            self.model = model
            self.load_error = None
            self._ready = True
            logger.info("Recognition context ready.")
            return True

    def shutdown(self) -> None:
        """Release the model and drop the catalog. Safe to call repeatedly."""
        with self._lock:
            if self.model is not None:
                self.model.close()
                self.model = None
            self.index = SimilarityIndex()
            self._ready = False
        logger.info("Recognition context shut down.")

    def __enter__(self) -> "RecognitionContext":
        self.initialize()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()
