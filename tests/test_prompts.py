from generation.prompts import build_system_prompt, build_user_prompt, format_artwork_info
from shared.schemas import ArtworkMetadata


def test_system_prompt_lists_filled_fields_in_order():
    metadata = ArtworkMetadata(
        title="The Night Watch",
        author="Rembrandt van Rijn",
        date="1642",
        technique="Oil on canvas",
        description="A militia company sets out.",
    )

    prompt = build_system_prompt(metadata)

    assert prompt == (
        "<|im_start|>system\n"
        "[ARTWORK INFO]\n"
        "\n"
        "Title: The Night Watch\n"
        "Object Date: 1642\n"
        "Artist Display Name: Rembrandt van Rijn\n"
        "Medium: Oil on canvas\n"
        "Description: A militia company sets out.\n"
        "\n"
        "<|im_end|>\n"
    )


def test_blank_and_unlisted_fields_are_skipped():
    info = format_artwork_info(ArtworkMetadata(title="Untitled", description="   ", school="Baroque"))
    assert "Description" not in info
    assert "Baroque" not in info
    assert "Title: Untitled" in info


def test_system_prompt_without_metadata():
    assert build_system_prompt(None) == "<|im_start|>system\n[ARTWORK INFO]\n\n\n<|im_end|>\n"


def test_user_prompt_opens_assistant_turn():
    prompt = build_user_prompt("  Who painted it?  ")
    assert prompt == (
        "<|im_start|>user\n[QUESTION]\n\nWho painted it?\n<|im_end|>\n<|im_start|>assistant"
    )
