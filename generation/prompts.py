# =============================================================================
# Art Docent - Docent Prompt Templates
# =============================================================================
# ChatML (Qwen) prompt pieces for grounded question answering.  The system
# turn carries the recognized artwork's metadata and is fixed for as long as
# the visitor talks about the same artwork, so its KV state is decoded once
# and reused; only the user turn changes between questions.
# =============================================================================

from typing import Optional

from shared.schemas import ArtworkMetadata

# (label, metadata field) in the order they appear in the prompt
_INFO_FIELDS = (
    ("Title", "title"),
    ("Object Date", "date"),
    ("Artist Display Name", "author"),
    ("Medium", "technique"),
    ("Type", "type"),
    ("Description", "description"),
)


def format_artwork_info(metadata: Optional[ArtworkMetadata]) -> str:
    """Render the [ARTWORK INFO] block, skipping empty fields."""
    lines = ["[ARTWORK INFO]", ""]
    if metadata is not None:
        for label, attribute in _INFO_FIELDS:
            value = getattr(metadata, attribute).strip()
            if value:
                lines.append(f"{label}: {value}")
    return "\n".join(lines) + "\n\n"


def build_system_prompt(metadata: Optional[ArtworkMetadata]) -> str:
    """System turn grounding the model in one artwork."""
    return f"<|im_start|>system\n{format_artwork_info(metadata)}<|im_end|>\n"


def build_user_prompt(question: str) -> str:
    """User turn followed by the opening of the assistant turn."""
    return (
        "<|im_start|>user\n"
        "[QUESTION]\n\n"
        f"{question.strip()}\n"
        "<|im_end|>\n"
        "<|im_start|>assistant"
    )
