# =============================================================================
# Art Docent - Recognition Package
# =============================================================================
# On-device artwork recognition: letterbox preprocessing, embedding
# extraction, catalog similarity search and the pipeline tying them together.
# =============================================================================
