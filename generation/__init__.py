# =============================================================================
# Art Docent - Generation Package
# =============================================================================
# On-device docent: a llama.cpp chat session grounded in the recognized
# artwork's metadata, with system-prompt KV caching and token streaming.
# =============================================================================
