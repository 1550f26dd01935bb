# =============================================================================
# Art Docent - Shared Package
# =============================================================================
# Data contracts and the error taxonomy used by the recognition, generation,
# server and camera packages.
# =============================================================================
