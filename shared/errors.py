# =============================================================================
# Art Docent - Error Taxonomy
# =============================================================================
# Exceptions raised by the recognition and generation layers. Each carries a
# stable ``code`` string so failures can be reported to callers (HTTP
# responses, CLI output) without leaking exception class names.
# =============================================================================


class DocentError(Exception):
    """Base class for all Art Docent errors."""

    code = "DOCENT_ERROR"


class InvalidImage(DocentError):
    """The input image is missing, empty or cannot be decoded."""

    code = "INVALID_IMAGE"


class ModelLoadError(DocentError):
    """Model weights are missing, corrupt or of an unsupported format."""

    code = "MODEL_LOAD_ERROR"


class InferenceError(DocentError):
    """The runtime failed during a forward pass."""

    code = "INFERENCE_ERROR"


class DimensionMismatch(DocentError):
    """A vector does not have the dimension the model or catalog expects."""

    code = "DIMENSION_MISMATCH"

    def __init__(self, expected: int, actual: int, context: str = "vector"):
        super().__init__(f"{context} has dimension {actual}, expected {expected}")
        self.expected = expected
        self.actual = actual


class CatalogLoadError(DocentError):
    """The catalog source is malformed. Recoverable: yields an empty catalog."""

    code = "CATALOG_LOAD_ERROR"


class SessionStateError(DocentError):
    """A generation session call was made out of order (programmer error)."""

    code = "SESSION_STATE_ERROR"


class GenerationTimeout(DocentError):
    """The caller-imposed generation deadline expired and generation was cancelled."""

    code = "GENERATION_TIMEOUT"


class GenerationError(DocentError):
    """The language model reported an internal error while generating."""

    code = "GENERATION_ERROR"
