# =============================================================================
# Art Docent - Camera Package
# =============================================================================
# Network camera snapshot capture and the command-line client that runs
# recognition and the docent chat locally.
# =============================================================================
