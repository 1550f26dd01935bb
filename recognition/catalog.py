# =============================================================================
# Art Docent - Catalog Source
# =============================================================================
# Reads the precomputed artwork catalog from JSON files and yields
# (identifier, vector, metadata) entries for the SimilarityIndex.
#
# Supported layouts:
#   - Split files (default):
#       art_index.json     {"<id>": [f0, f1, ...], ...}
#       art_metadata.json  {"<id>": {"title": ..., "author": ..., ...}, ...}
#   - Wrapped index:       {"artworks": [{"id": ..., "embedding": [...]}, ...]}
#   - Combined list:       [{"id" | "title": ..., "vector" | "embedding": [...],
#                            "author": ..., "category": ..., ...}, ...]
#
# An unreadable or malformed index file raises CatalogLoadError, which the
# index turns into an empty catalog.  Malformed individual entries are
# skipped with a warning; a broken metadata file only drops the metadata.
# =============================================================================

import json
import logging
import os
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np
from pydantic import ValidationError

from recognition.similarity import SimilarityIndex, SimilarityMetric
from shared.errors import CatalogLoadError
from shared.schemas import ArtworkMetadata

logger = logging.getLogger(__name__)

CatalogEntry = Tuple[str, np.ndarray, Optional[ArtworkMetadata]]

_VECTOR_KEYS = ("vector", "embedding")
_ID_KEYS = ("id", "title")


def _read_json(path: str):
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise CatalogLoadError(f"Cannot read catalog file {path}: {exc}") from exc


def _parse_vector(raw) -> np.ndarray:
    if not isinstance(raw, list) or not raw:
        raise ValueError("vector must be a non-empty list of numbers")
    if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in raw):
        raise ValueError("vector contains non-numeric values")
    return np.asarray(raw, dtype=np.float32)


def _parse_metadata(identifier: str, raw) -> Optional[ArtworkMetadata]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        logger.warning("Ignoring metadata for '%s': expected an object", identifier)
        return None
    fields = dict(raw)
    # Older exports name the object type "category"
    if "type" not in fields and "category" in fields:
        fields["type"] = fields["category"]
    try:
        return ArtworkMetadata.model_validate(fields)
    except ValidationError as exc:
        logger.warning("Ignoring invalid metadata for '%s': %s", identifier, exc)
        return None


class JsonCatalogSource:
    """
    Catalog provider backed by JSON files.

    Args:
        index_path:    Path to the embedding index (or combined list) file.
        metadata_path: Optional path to the metadata file for split layouts.
    """

    def __init__(self, index_path: str, metadata_path: Optional[str] = None):
        self.index_path = index_path
        self.metadata_path = metadata_path

    def _load_metadata(self) -> Dict[str, dict]:
        if not self.metadata_path:
            return {}
        if not os.path.exists(self.metadata_path):
            logger.warning("Metadata file not found: %s", self.metadata_path)
            return {}
        try:
            raw = _read_json(self.metadata_path)
        except CatalogLoadError:
            logger.exception("Metadata file unreadable; artworks will have no metadata")
            return {}
        if not isinstance(raw, dict):
            logger.warning("Metadata file %s is not an object; ignoring it", self.metadata_path)
            return {}
        return raw

    def _raw_entries(self, raw) -> List[Tuple[str, object, Optional[dict]]]:
        """Normalize the three supported layouts to (id, raw_vector, raw_metadata)."""
        if isinstance(raw, dict) and isinstance(raw.get("artworks"), list):
            raw = raw["artworks"]

        if isinstance(raw, dict):
            return [(str(identifier), vector, None) for identifier, vector in raw.items()]

        if isinstance(raw, list):
            entries = []
            for position, item in enumerate(raw):
                if not isinstance(item, dict):
                    logger.warning("Skipping catalog item #%d: expected an object", position)
                    continue
                identifier = next((item[k] for k in _ID_KEYS if item.get(k)), None)
                vector = next((item[k] for k in _VECTOR_KEYS if k in item), None)
                if identifier is None:
                    logger.warning("Skipping catalog item #%d: no identifier", position)
                    continue
                metadata = {k: v for k, v in item.items() if k not in _VECTOR_KEYS and k != "id"}
                entries.append((str(identifier), vector, metadata))
            return entries

        raise CatalogLoadError(
            f"Catalog file {self.index_path} must contain an object or a list, "
            f"got {type(raw).__name__}"
        )

    def entries(self) -> Iterator[CatalogEntry]:
        """
        Yield valid (identifier, vector, metadata) catalog entries in file order.

        Raises:
            CatalogLoadError: If the index file is missing or malformed.
        """
        raw_index = _read_json(self.index_path)
        raw_metadata = self._load_metadata()
        raw_entries = self._raw_entries(raw_index)

        skipped = 0
        for identifier, raw_vector, inline_metadata in raw_entries:
            try:
                vector = _parse_vector(raw_vector)
            except ValueError as exc:
                logger.warning("Skipping catalog entry '%s': %s", identifier, exc)
                skipped += 1
                continue

            metadata_source = raw_metadata.get(identifier, inline_metadata)
            yield identifier, vector, _parse_metadata(identifier, metadata_source)

        if skipped:
            logger.warning("Skipped %d malformed catalog entries in %s", skipped, self.index_path)


def load_catalog(
    index_path: str,
    metadata_path: Optional[str] = None,
    metric: SimilarityMetric = SimilarityMetric.COSINE,
    dimension: Optional[int] = None,
) -> SimilarityIndex:
    """Load a SimilarityIndex from JSON catalog files (empty on failure)."""
    logger.info("Loading catalog: %s (metadata=%s)", index_path, metadata_path)
    source = JsonCatalogSource(index_path, metadata_path)
    return SimilarityIndex.load(source, metric=metric, dimension=dimension)


def write_index(path: str, vectors: Dict[str, np.ndarray]) -> None:
    """Write an {id: [floats]} index file."""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    payload = {identifier: [float(v) for v in np.asarray(vector).reshape(-1)]
               for identifier, vector in vectors.items()}
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f)
