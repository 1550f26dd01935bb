# =============================================================================
# Art Docent - Similarity Index
# =============================================================================
# Holds the catalog of reference embeddings (identifier -> vector + metadata)
# and ranks catalog entries against a query embedding.
#
# Two metrics are supported and fixed per index instance:
#   - "cosine": dot(a, b) / (|a| |b|), works with unnormalized vectors.
#   - "dot":    plain dot product.  Catalog vectors are L2-normalized when
#               added; the query must come from a model that normalizes its
#               output.  Same ranking as cosine, cheaper.
#
# The scan uses a strictly-greater comparison, so among equal scores the
# entry inserted first wins.  The catalog is read-only once loaded and may
# be queried from several threads without locking.
# =============================================================================

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from shared.errors import CatalogLoadError, DimensionMismatch
from shared.schemas import ArtworkMetadata

logger = logging.getLogger(__name__)


class SimilarityMetric(str, Enum):
    COSINE = "cosine"
    DOT = "dot"


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """
    Cosine similarity of two equal-length vectors.

    Returns:
        A value in [-1.0, 1.0], or 0.0 when either vector has zero norm.

    Raises:
        DimensionMismatch: If the vectors differ in length.
    """
    a = np.asarray(a, dtype=np.float64).reshape(-1)
    b = np.asarray(b, dtype=np.float64).reshape(-1)
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatch(a.shape[0], b.shape[0])

    denominator = float(np.linalg.norm(a)) * float(np.linalg.norm(b))
    if denominator == 0.0:
        return 0.0
    score = float(np.dot(a, b)) / denominator
    return max(-1.0, min(1.0, score))


def dot_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Raw dot product; only meaningful for L2-normalized vectors."""
    a = np.asarray(a, dtype=np.float64).reshape(-1)
    b = np.asarray(b, dtype=np.float64).reshape(-1)
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatch(a.shape[0], b.shape[0])
    return float(np.dot(a, b))


@dataclass(frozen=True)
class ArtworkRecord:
    """
    One catalog entry.

    Attributes:
        identifier: Unique catalog key.
        vector:     Reference embedding (float32).
        metadata:   Descriptive metadata, or None if the catalog lacks it.
    """

    identifier: str
    vector: np.ndarray
    metadata: Optional[ArtworkMetadata] = None

    @property
    def dimension(self) -> int:
        return int(self.vector.shape[0])


@dataclass(frozen=True)
class MatchResult:
    """The best catalog entry for a query and its similarity score."""

    record: ArtworkRecord
    score: float

    @property
    def identifier(self) -> str:
        return self.record.identifier


class SimilarityIndex:
    """
    Insertion-ordered catalog of artwork embeddings.

    Args:
        metric:    Similarity metric used for every comparison.
        dimension: Required vector dimension.  When None, the dimension of
                   the first added entry becomes the requirement.
    """

    def __init__(self, metric: SimilarityMetric = SimilarityMetric.COSINE,
                 dimension: Optional[int] = None):
        self.metric = SimilarityMetric(metric)
        self.dimension = dimension
        self._records: Dict[str, ArtworkRecord] = {}
        self._score = cosine_similarity if self.metric is SimilarityMetric.COSINE else dot_similarity

    # -----------------------------------------------------------------
    # Building
    # -----------------------------------------------------------------

    def add(self, identifier: str, vector, metadata: Optional[ArtworkMetadata] = None) -> ArtworkRecord:
        """
        Add one entry.

        Raises:
            ValueError:        If the identifier is already present or the
                               vector is empty / non-finite.
            DimensionMismatch: If the vector has the wrong dimension.
        """
        if identifier in self._records:
            raise ValueError(f"Duplicate catalog identifier '{identifier}'")

        array = np.asarray(vector, dtype=np.float32).reshape(-1)
        if array.size == 0:
            raise ValueError(f"Empty vector for '{identifier}'")
        if not np.all(np.isfinite(array)):
            raise ValueError(f"Non-finite values in vector for '{identifier}'")

        if self.dimension is None:
            self.dimension = int(array.shape[0])
        elif array.shape[0] != self.dimension:
            raise DimensionMismatch(self.dimension, array.shape[0], context=f"catalog entry '{identifier}'")

        if self.metric is SimilarityMetric.DOT:
            norm = float(np.linalg.norm(array))
            if norm > 0.0:
                array = array / norm

        array.setflags(write=False)
        record = ArtworkRecord(identifier=identifier, vector=array, metadata=metadata)
        self._records[identifier] = record
        return record

    @classmethod
    def load(
        cls,
        source,
        metric: SimilarityMetric = SimilarityMetric.COSINE,
        dimension: Optional[int] = None,
    ) -> "SimilarityIndex":
        """
        Build an index from a catalog source.

        ``source`` is any object with an ``entries()`` method yielding
        ``(identifier, vector, metadata)`` tuples (see recognition.catalog).
        A source that fails with CatalogLoadError yields an empty index.
        Invalid entries (wrong dimension, duplicates, bad values) are
        skipped individually.
        """
        index = cls(metric=metric, dimension=dimension)
        try:
            entries = list(source.entries())
        except CatalogLoadError:
            logger.exception("Catalog could not be loaded; continuing with an empty catalog")
            return index

        index.extend(entries)
        logger.info(
            "Catalog loaded: %d artworks (dim=%s, metric=%s)",
            len(index), index.dimension, index.metric.value,
        )
        missing = index.missing_metadata()
        if missing:
            logger.warning("%d catalog entries have no metadata: %s", len(missing), missing[:10])
        return index

    def extend(self, entries: Iterable[Tuple[str, object, Optional[ArtworkMetadata]]]) -> int:
        """Add entries, skipping invalid ones. Returns the number added."""
        added = 0
        for identifier, vector, metadata in entries:
            try:
                self.add(identifier, vector, metadata)
                added += 1
            except (ValueError, DimensionMismatch) as exc:
                logger.warning("Skipping catalog entry '%s': %s", identifier, exc)
        return added

    # -----------------------------------------------------------------
    # Accessors
    # -----------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, identifier: str) -> bool:
        return identifier in self._records

    def get(self, identifier: str) -> Optional[ArtworkRecord]:
        return self._records.get(identifier)

    def identifiers(self) -> List[str]:
        return list(self._records)

    def missing_metadata(self) -> List[str]:
        """Identifiers that have a vector but no metadata record."""
        return [rid for rid, record in self._records.items() if record.metadata is None]

    # -----------------------------------------------------------------
    # Search
    # -----------------------------------------------------------------

    def _scores(self, query: np.ndarray):
        """Yield (record, score) in catalog order, skipping mismatched entries."""
        query = np.asarray(query, dtype=np.float32).reshape(-1)
        for record in self._records.values():
            if record.dimension != query.shape[0]:
                logger.warning(
                    "Skipping '%s': query dimension %d != catalog dimension %d",
                    record.identifier, query.shape[0], record.dimension,
                )
                continue
            yield record, self._score(query, record.vector)

    def query(self, vector, top_k: int = 5) -> List[Tuple[str, float]]:
        """
        Rank catalog entries against ``vector``.

        Returns:
            Up to ``top_k`` (identifier, score) pairs sorted by descending
            score; equal scores keep catalog order.
        """
        if top_k <= 0:
            return []
        scored = [(record.identifier, score) for record, score in self._scores(vector)]
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[:top_k]

    def best_match(self, vector, threshold: float) -> Optional[MatchResult]:
        """
        Return the highest-scoring entry if its score reaches ``threshold``.

        Returns:
            MatchResult, or None for an empty catalog or when the top score
            is below the threshold.
        """
        best_record: Optional[ArtworkRecord] = None
        best_score = float("-inf")

        for record, score in self._scores(vector):
            if score > best_score:
                best_score = score
                best_record = record

        if best_record is None:
            logger.debug("No comparable catalog entries")
            return None
        if best_score < threshold:
            logger.debug(
                "Best candidate '%s' (%.4f) below threshold %.3f",
                best_record.identifier, best_score, threshold,
            )
            return None

        logger.debug("Best match '%s' (%.4f)", best_record.identifier, best_score)
        return MatchResult(record=best_record, score=best_score)
