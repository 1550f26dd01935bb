# =============================================================================
# Art Docent - Centralized Configuration
# =============================================================================
# Provides a single Config dataclass containing all tunable parameters for
# the recognizer, the docent language model, the HTTP server and the camera
# client. Parameters are overridable via environment variables with the
# DOCENT_ prefix (e.g., DOCENT_MATCH_THRESHOLD=0.6).
#
# The image normalization scheme, channel layout and acceptance threshold
# differ between embedding model variants, so they are configuration rather
# than constants baked into the pipeline.
# =============================================================================

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import torch

# Project root directory (where this file lives)
_PROJECT_ROOT = str(Path(__file__).parent.resolve())


def _detect_device() -> str:
    """
    Auto-detect the best available compute device.

    Returns:
        str: "mps" on Apple Silicon, "cuda" on NVIDIA GPUs, "cpu" as fallback.
    """
    if torch.backends.mps.is_available():
        return "mps"
    elif torch.cuda.is_available():
        return "cuda"
    return "cpu"


def _parse_bool(value: str) -> bool:
    """Interpret common truthy strings ("1", "true", "yes", "on")."""
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """
    Centralized configuration for the Art Docent system.

    All fields can be overridden via environment variables prefixed with DOCENT_.
    """

    # -- Image preprocessing --
    image_size: int = 224
    normalization: str = "clip"  # clip | imagenet | unit | symmetric
    channel_layout: str = "chw"  # chw | hwc

    # -- Embedding model --
    embedding_backend: str = "torchscript"  # torchscript | clip
    embedding_model_path: str = field(
        default_factory=lambda: os.path.join(_PROJECT_ROOT, "models", "art_embedder.pt")
    )
    embedding_dim: int = 128
    produces_normalized_output: bool = False

    # -- Catalog / similarity search --
    catalog_index_path: str = field(
        default_factory=lambda: os.path.join(_PROJECT_ROOT, "data", "art_index.json")
    )
    catalog_metadata_path: str = field(
        default_factory=lambda: os.path.join(_PROJECT_ROOT, "data", "art_metadata.json")
    )
    similarity_metric: str = "cosine"  # cosine | dot
    match_threshold: float = 0.4
    top_k: int = 5

    # -- Docent LLM (llama.cpp GGUF) --
    llm_model_path: str = field(
        default_factory=lambda: os.path.join(_PROJECT_ROOT, "models", "Qwen3-0.6B-IQ4_NL.gguf")
    )
    n_ctx: int = 2048
    n_threads: int = 4
    n_gpu_layers: int = 0
    max_new_tokens: int = 512
    temperature: float = 0.7
    top_k_sampling: int = 40
    top_p: float = 0.9
    repeat_penalty: float = 1.1
    seed: int = 42
    require_system_prompt: bool = True
    generation_timeout_seconds: float = 300.0
    stream_queue_size: int = 64

    # -- Networking --
    server_host: str = "127.0.0.1"
    server_port: int = 8000
    camera_url: str = "http://192.168.4.1:80"

    # -- Compute --
    device: str = field(default_factory=_detect_device)

    def __post_init__(self):
        """Apply environment variable overrides."""
        self._apply_env_overrides()

    def _apply_env_overrides(self):
        """
        Override config fields from environment variables.

        Looks for DOCENT_<FIELD_NAME_UPPERCASE> environment variables and
        applies them with appropriate type conversion.
        """
        field_types = {
            "image_size": int,
            "normalization": str,
            "channel_layout": str,
            "embedding_backend": str,
            "embedding_model_path": str,
            "embedding_dim": int,
            "produces_normalized_output": _parse_bool,
            "catalog_index_path": str,
            "catalog_metadata_path": str,
            "similarity_metric": str,
            "match_threshold": float,
            "top_k": int,
            "llm_model_path": str,
            "n_ctx": int,
            "n_threads": int,
            "n_gpu_layers": int,
            "max_new_tokens": int,
            "temperature": float,
            "top_k_sampling": int,
            "top_p": float,
            "repeat_penalty": float,
            "seed": int,
            "require_system_prompt": _parse_bool,
            "generation_timeout_seconds": float,
            "stream_queue_size": int,
            "server_host": str,
            "server_port": int,
            "camera_url": str,
            "device": str,
        }
        for field_name, field_type in field_types.items():
            env_key = f"DOCENT_{field_name.upper()}"
            env_value = os.environ.get(env_key)
            if env_value is not None:
                setattr(self, field_name, field_type(env_value))


# ---------------------------------------------------------------------------
# Singleton accessor
# ---------------------------------------------------------------------------
_config_instance: Optional[Config] = None


def get_config() -> Config:
    """
    Return the singleton Config instance, creating it on first call.

    Returns:
        Config: The global configuration object.
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config()
    return _config_instance
