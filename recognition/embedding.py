# =============================================================================
# Art Docent - Embedding Model
# =============================================================================
# Provides the EmbeddingModel class that loads an image feature extractor,
# runs it on preprocessed tensors and returns a fixed-dimension float32
# embedding vector.
#
# Two backends are supported:
#   - "torchscript": a torch.jit archive exported from the training side
#     (input (1, 3, S, S) or (1, S, S, 3), output (1, D)).
#   - "clip":        a HuggingFace CLIP vision tower with projection head;
#     its image_embeds are the embedding (input must be CHW).
#
# Some exported graphs already L2-normalize their output, others do not.
# The ``produces_normalized_output`` flag states which; when false the
# vector is normalized here.
#
# A model handle is not re-entrant: inference calls are serialized with a
# lock, and the handle must be released with close() (or a with-block).
# =============================================================================

import logging
import os
import threading
from typing import Optional

import numpy as np
import torch
import torch.nn as nn

from recognition.preprocess import ChannelLayout
from shared.errors import DimensionMismatch, InferenceError, ModelLoadError

logger = logging.getLogger(__name__)

# Norms below this are treated as zero: the vector is returned unnormalized
NORM_EPSILON = 1e-8

SUPPORTED_BACKENDS = ("torchscript", "clip")


def l2_normalize(vector: np.ndarray, eps: float = NORM_EPSILON) -> np.ndarray:
    """
    Scale ``vector`` to unit Euclidean norm.

    A vector whose norm is below ``eps`` is returned unchanged (with a
    warning) instead of being divided by ~0.

    Args:
        vector: 1-D float array.
        eps:    Smallest norm that is still divided by.

    Returns:
        float32 array with norm 1.0, or the input values when the norm is ~0.
    """
    vector = np.asarray(vector, dtype=np.float32)
    norm = float(np.linalg.norm(vector))
    if not np.isfinite(norm) or norm < eps:
        logger.warning("Embedding norm %.3g is near zero; returning it unnormalized", norm)
        return vector
    return (vector / norm).astype(np.float32)


class _ClipImageEmbeds(nn.Module):
    """Adapts CLIPVisionModelWithProjection to a tensor -> tensor module."""

    def __init__(self, model: nn.Module):
        super().__init__()
        self.model = model

    def forward(self, pixel_values: torch.Tensor) -> torch.Tensor:
        return self.model(pixel_values=pixel_values).image_embeds


def _load_torchscript(path: str, device: str) -> nn.Module:
    if not os.path.isfile(path):
        raise ModelLoadError(f"Embedding model not found: {path}")
    try:
        return torch.jit.load(path, map_location=device)
    except (RuntimeError, ValueError, OSError) as exc:
        raise ModelLoadError(f"Cannot load TorchScript model {path}: {exc}") from exc


def _load_clip(model_id: str, device: str) -> nn.Module:
    # Import here to keep transformers off the torchscript-only path
    from transformers import CLIPVisionModelWithProjection

    try:
        model = CLIPVisionModelWithProjection.from_pretrained(model_id)
    except (OSError, ValueError) as exc:
        raise ModelLoadError(f"Cannot load CLIP vision model {model_id}: {exc}") from exc
    return _ClipImageEmbeds(model).to(device)


class EmbeddingModel:
    """
    An image feature extractor with a fixed output dimension.

    Args:
        module:                     Callable torch module mapping a batched
                                    input tensor to a (1, D) output.
        embedding_dim:              Expected output dimension D.
        layout:                     Channel layout the module expects.
        produces_normalized_output: True if the module output is already
                                    L2-normalized.
        device:                     Compute device ("cpu", "cuda", "mps").
        name:                       Label used in log messages.
    """

    def __init__(
        self,
        module: nn.Module,
        embedding_dim: int,
        layout: ChannelLayout = ChannelLayout.CHW,
        produces_normalized_output: bool = False,
        device: str = "cpu",
        name: str = "embedding-model",
    ):
        if embedding_dim <= 0:
            raise ValueError(f"embedding_dim must be positive, got {embedding_dim}")
        self.embedding_dim = embedding_dim
        self.layout = ChannelLayout(layout)
        self.produces_normalized_output = produces_normalized_output
        self.name = name
        self._device = device
        self._lock = threading.Lock()

        self._module: Optional[nn.Module] = module
        if hasattr(self._module, "eval"):
            self._module.eval()

    @classmethod
    def load_from(
        cls,
        model_source: str,
        embedding_dim: int,
        layout: ChannelLayout = ChannelLayout.CHW,
        backend: str = "torchscript",
        produces_normalized_output: bool = False,
        device: str = "cpu",
    ) -> "EmbeddingModel":
        """
        Load model weights and wrap them.

        Args:
            model_source: File path (torchscript) or HuggingFace id / local
                          directory (clip).
            embedding_dim: Expected output dimension.
            layout:        Channel layout the model expects.
            backend:       "torchscript" or "clip".
            produces_normalized_output: Whether the graph L2-normalizes.
            device:        Compute device.

        Returns:
            A ready EmbeddingModel.

        Raises:
            ModelLoadError: If the source is missing, corrupt or unsupported.
        """
        layout = ChannelLayout(layout)
        logger.info(
            "Loading embedding model: %s (backend=%s, dim=%d, layout=%s, device=%s)",
            model_source, backend, embedding_dim, layout.value, device,
        )

        if backend == "torchscript":
            module = _load_torchscript(model_source, device)
        elif backend == "clip":
            if layout is not ChannelLayout.CHW:
                raise ModelLoadError("The clip backend expects CHW input tensors")
            module = _load_clip(model_source, device)
        else:
            raise ModelLoadError(
                f"Unsupported embedding backend '{backend}'. "
                f"Supported: {list(SUPPORTED_BACKENDS)}"
            )

        model = cls(
            module,
            embedding_dim=embedding_dim,
            layout=layout,
            produces_normalized_output=produces_normalized_output,
            device=device,
            name=os.path.basename(model_source.rstrip("/")) or model_source,
        )
        logger.info("Embedding model ready: %s", model.name)
        return model

    @classmethod
    def from_config(cls, config) -> "EmbeddingModel":
        """Load the embedding model described by a Config instance."""
        return cls.load_from(
            config.embedding_model_path,
            embedding_dim=config.embedding_dim,
            layout=config.channel_layout,
            backend=config.embedding_backend,
            produces_normalized_output=config.produces_normalized_output,
            device=config.device,
        )

    @property
    def is_loaded(self) -> bool:
        """Whether the model handle is still open."""
        return self._module is not None

    def _check_input(self, tensor: np.ndarray) -> None:
        if not isinstance(tensor, np.ndarray) or tensor.ndim != 3:
            raise InferenceError(
                f"Expected a 3-D preprocessed tensor, got {getattr(tensor, 'shape', type(tensor))}"
            )
        channel_axis = 0 if self.layout is ChannelLayout.CHW else 2
        if tensor.shape[channel_axis] != 3:
            raise InferenceError(
                f"Tensor shape {tensor.shape} does not match the model's "
                f"{self.layout.value.upper()} layout"
            )

    @torch.no_grad()
    def _forward(self, tensor: np.ndarray) -> np.ndarray:
        batch = torch.from_numpy(np.ascontiguousarray(tensor, dtype=np.float32))
        batch = batch.unsqueeze(0).to(self._device)
        output = self._module(batch)
        # Some exported graphs return a tuple; the embedding is the first output
        if isinstance(output, (tuple, list)):
            output = output[0]
        return output.detach().float().cpu().numpy().reshape(-1)

    def infer(self, tensor: np.ndarray) -> np.ndarray:
        """
        Run the model on one preprocessed tensor.

        Calls are serialized per model handle, so infer() may be called from
        several threads.

        Args:
            tensor: float32 array in the model's layout, without batch axis.

        Returns:
            float32 embedding of length ``embedding_dim`` (L2-normalized
            unless the norm is ~0).

        Raises:
            InferenceError:    If the model is closed, the input has the wrong
                               shape, or the forward pass fails.
            DimensionMismatch: If the output length differs from embedding_dim.
        """
        self._check_input(tensor)

        with self._lock:
            if self._module is None:
                raise InferenceError(f"Model {self.name} has been closed")
            try:
                vector = self._forward(tensor)
            except RuntimeError as exc:
                raise InferenceError(f"Forward pass failed: {exc}") from exc

        if vector.shape[0] != self.embedding_dim:
            raise DimensionMismatch(self.embedding_dim, vector.shape[0], context="model output")
        if not np.all(np.isfinite(vector)):
            raise InferenceError("Model produced non-finite values")

        if not self.produces_normalized_output:
            vector = l2_normalize(vector)

        logger.debug(
            "Embedded tensor %s -> %d-dim vector (norm=%.4f)",
            tensor.shape, vector.shape[0], float(np.linalg.norm(vector)),
        )
        return vector.astype(np.float32)

    def close(self) -> None:
        """Release the model handle. Safe to call more than once."""
        with self._lock:
            if self._module is None:
                return
            self._module = None
        logger.info("Embedding model released: %s", self.name)

    def __enter__(self) -> "EmbeddingModel":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
