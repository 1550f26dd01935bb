# =============================================================================
# Art Docent - Shared Schemas
# =============================================================================
# Pydantic models defining the data contracts of the system: the artwork
# metadata record stored in the catalog (and fed to the docent prompt), and
# the request/response bodies of the HTTP API.
#
# Images travel over HTTP as base64-encoded bytes of an encoded file (JPEG,
# PNG, ...) so the API stays plain JSON.
# =============================================================================

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class ArtworkMetadata(BaseModel):
    """
    Descriptive metadata for one catalogued artwork.

    Every field is free text and optional; catalog files produced by
    different tools fill in different subsets. Non-string scalars (e.g. a
    numeric year) are coerced to strings and nulls to "".

    Attributes:
        title:       Artwork title.
        author:      Artist display name.
        type:        Object type (painting, sculpture, ...).
        technique:   Medium / technique (oil on canvas, ...).
        school:      Artistic school or movement.
        date:        Object date as written in the source catalog.
        description: Free-text description used to ground the docent answers.
    """

    title: str = ""
    author: str = ""
    type: str = ""
    technique: str = ""
    school: str = ""
    date: str = ""
    description: str = ""

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_text(cls, value):
        if value is None:
            return ""
        if isinstance(value, (int, float)):
            return str(value)
        return value


class RecognizeRequest(BaseModel):
    """
    Recognition request carrying one captured photo.

    Attributes:
        image_data: Base64-encoded bytes of an encoded image file.
        top_k:      When > 0, also return the top-K candidates for debugging.
    """

    image_data: str = Field(..., description="Base64-encoded image file bytes")
    top_k: int = Field(default=0, ge=0, le=50, description="Number of diagnostic candidates")


class CandidateResponse(BaseModel):
    """One scored catalog entry."""

    artwork_id: str
    score: float


class MatchResponse(BaseModel):
    """
    The accepted best match.

    Attributes:
        artwork_id: Catalog identifier of the artwork.
        score:      Similarity score of the match.
        metadata:   Catalog metadata, or None when the catalog has no record
                    for this identifier.
    """

    artwork_id: str
    score: float
    metadata: Optional[ArtworkMetadata] = None


class RecognitionResponse(BaseModel):
    """
    Outcome of one recognition request.

    Attributes:
        state:      Terminal pipeline state: "matched", "no_match" or "failed".
        error_code: Error code when state is "failed" (e.g. "INVALID_IMAGE").
        error:      Human-readable error message when state is "failed".
        match:      The accepted match, or None.
        candidates: Top-K candidates when requested.
        timings_ms: Per-stage durations in milliseconds.
    """

    state: str
    error_code: Optional[str] = None
    error: Optional[str] = None
    match: Optional[MatchResponse] = None
    candidates: List[CandidateResponse] = Field(default_factory=list)
    timings_ms: dict = Field(default_factory=dict)


class AskRequest(BaseModel):
    """
    A docent question.

    Attributes:
        question:   The visitor's question.
        artwork_id: Catalog identifier to ground the answer in. When omitted,
                    the artwork currently loaded into the session is used.
    """

    question: str = Field(..., min_length=1, description="Question about the artwork")
    artwork_id: Optional[str] = Field(default=None, description="Catalog identifier")


class GenerationStatsResponse(BaseModel):
    """Throughput statistics of one generation."""

    total_tokens: int
    total_time_seconds: float
    tokens_per_second: float


class AskResponse(BaseModel):
    """
    The docent's answer.

    Attributes:
        artwork_id:  Identifier of the artwork the answer is grounded in.
        answer:      Generated text.
        stop_reason: "eos" or "length".
        stats:       Generation throughput statistics.
    """

    artwork_id: Optional[str] = None
    answer: str
    stop_reason: str
    stats: GenerationStatsResponse
