# =============================================================================
# Art Docent - Server Package
# =============================================================================
# This package contains the HTTP API exposing artwork recognition and the
# grounded docent chat, plus its CLI entry point.
# =============================================================================
