# =============================================================================
# Art Docent - Image Preprocessing
# =============================================================================
# Turns an arbitrary captured photo into the exact input tensor an embedding
# model variant expects:
#
#   1. Letterbox: resize preserving aspect ratio so the longer side equals the
#      target size, then center it on a black square canvas.  Stretch-resizing
#      degrades match accuracy and is never used.
#   2. Normalize: per-channel (v/255 - mean) / std, or an affine v*scale+offset
#      (v/255 for [0, 1] models, v/127.5 - 1 for [-1, 1] models).
#   3. Serialize: interleaved (H, W, C) or planar (C, H, W) float32 layout.
#
# The normalization scheme and channel layout are per-model configuration.
# A wrong layout produces garbage embeddings without any error, so both are
# explicit arguments everywhere.
# =============================================================================

import io
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Union

import numpy as np
from PIL import Image, UnidentifiedImageError

from shared.errors import InvalidImage

logger = logging.getLogger(__name__)

RawImage = Union[Image.Image, np.ndarray]

# Letterbox background (black)
DEFAULT_FILL: Tuple[int, int, int] = (0, 0, 0)


class ChannelLayout(str, Enum):
    """Memory layout of the serialized tensor."""

    HWC = "hwc"  # interleaved: R,G,B of pixel 0, then pixel 1, ...
    CHW = "chw"  # planar: all R values, then all G, then all B


@dataclass(frozen=True)
class NormalizationScheme:
    """
    Per-channel pixel normalization for one model variant.

    When ``mean`` and ``std`` are set the transform is
    ``(v / 255 - mean[c]) / std[c]``; otherwise it is ``v * scale + offset``.

    Attributes:
        mean:   Per-channel means in [0, 1] space (R, G, B).
        std:    Per-channel standard deviations in [0, 1] space.
        scale:  Multiplier applied to raw [0, 255] values (affine mode).
        offset: Added after scaling (affine mode).
    """

    mean: Optional[Tuple[float, float, float]] = None
    std: Optional[Tuple[float, float, float]] = None
    scale: float = 1.0 / 255.0
    offset: float = 0.0

    def __post_init__(self):
        if (self.mean is None) != (self.std is None):
            raise ValueError("mean and std must be given together")
        if self.mean is not None:
            if len(self.mean) != 3 or len(self.std) != 3:
                raise ValueError("mean and std need exactly 3 channel values")
            if any(s == 0 for s in self.std):
                raise ValueError("std values must be non-zero")

    def apply(self, pixels: np.ndarray) -> np.ndarray:
        """
        Normalize an (H, W, 3) uint8 RGB array.

        Returns:
            float32 array of the same shape.
        """
        values = pixels.astype(np.float32)
        if self.mean is not None:
            mean = np.asarray(self.mean, dtype=np.float32)
            std = np.asarray(self.std, dtype=np.float32)
            return (values / np.float32(255.0) - mean) / std
        return values * np.float32(self.scale) + np.float32(self.offset)

    @classmethod
    def from_name(cls, name: str) -> "NormalizationScheme":
        """
        Look up a named preset ("clip", "imagenet", "unit", "symmetric").

        Raises:
            ValueError: If the name is unknown.
        """
        try:
            return NORMALIZATION_PRESETS[name.lower()]
        except KeyError:
            raise ValueError(
                f"Unknown normalization '{name}'. "
                f"Supported: {sorted(NORMALIZATION_PRESETS)}"
            ) from None


# CLIP-style mean/std (OpenAI CLIP image processor constants)
CLIP = NormalizationScheme(
    mean=(0.48145466, 0.4578275, 0.40821073),
    std=(0.26862954, 0.26130258, 0.27577711),
)
IMAGENET = NormalizationScheme(mean=(0.485, 0.456, 0.406), std=(0.229, 0.224, 0.225))
# EfficientNet-style variants
UNIT = NormalizationScheme(scale=1.0 / 255.0, offset=0.0)
SYMMETRIC = NormalizationScheme(scale=1.0 / 127.5, offset=-1.0)

NORMALIZATION_PRESETS = {
    "clip": CLIP,
    "imagenet": IMAGENET,
    "unit": UNIT,
    "symmetric": SYMMETRIC,
}


# ---------------------------------------------------------------------------
# Image decoding
# ---------------------------------------------------------------------------

def decode_image(data: bytes) -> Image.Image:
    """
    Decode encoded image bytes (JPEG, PNG, ...) into a PIL image.

    Raises:
        InvalidImage: If the bytes are empty or cannot be decoded.
    """
    if not data:
        raise InvalidImage("empty image data")
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise InvalidImage(f"cannot decode image: {exc}") from exc
    return image


def open_image(path: str) -> Image.Image:
    """
    Load an image file from disk.

    Raises:
        InvalidImage: If the file is missing or is not a readable image.
    """
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as exc:
        raise InvalidImage(f"cannot read image file {path}: {exc}") from exc
    return decode_image(data)


def to_rgb(image: RawImage, fill: Tuple[int, int, int] = DEFAULT_FILL) -> Image.Image:
    """
    Validate a raw image and convert it to an RGB PIL image.

    Accepts PIL images of any mode and uint8 numpy arrays shaped (H, W),
    (H, W, 1), (H, W, 3) or (H, W, 4).  Alpha is composited onto ``fill``.

    Raises:
        InvalidImage: If the image is missing, empty or of an unsupported type.
    """
    if image is None:
        raise InvalidImage("no image supplied")

    if isinstance(image, np.ndarray):
        if image.dtype != np.uint8:
            raise InvalidImage(f"unsupported pixel dtype {image.dtype}, expected uint8")
        if image.ndim == 3 and image.shape[2] == 1:
            image = image[:, :, 0]
        if image.ndim not in (2, 3) or (image.ndim == 3 and image.shape[2] not in (3, 4)):
            raise InvalidImage(f"unsupported pixel array shape {image.shape}")
        if image.shape[0] == 0 or image.shape[1] == 0:
            raise InvalidImage(f"empty pixel array {image.shape}")
        image = Image.fromarray(image)

    if not isinstance(image, Image.Image):
        raise InvalidImage(f"unsupported image type {type(image).__name__}")

    width, height = image.size
    if width <= 0 or height <= 0:
        raise InvalidImage(f"empty image {width}x{height}")

    has_alpha = image.mode in ("RGBA", "LA") or (
        image.mode == "P" and "transparency" in image.info
    )
    if has_alpha:
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, fill)
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    if image.mode != "RGB":
        return image.convert("RGB")
    return image


# ---------------------------------------------------------------------------
# Letterbox
# ---------------------------------------------------------------------------

def letterbox_box(width: int, height: int, target_size: int) -> Tuple[int, int, int, int]:
    """
    Compute where a width x height image lands on the letterbox canvas.

    The longer side is scaled to exactly ``target_size``; the shorter side is
    scaled by the same factor (truncated, at least 1 px) and centered.

    Returns:
        (left, top, new_width, new_height) in canvas pixels.
    """
    scale = target_size / max(width, height)
    if width >= height:
        new_width = target_size
        new_height = max(1, min(target_size, int(height * scale)))
    else:
        new_height = target_size
        new_width = max(1, min(target_size, int(width * scale)))

    left = (target_size - new_width) // 2
    top = (target_size - new_height) // 2
    return left, top, new_width, new_height


def letterbox(
    image: RawImage,
    target_size: int,
    fill: Tuple[int, int, int] = DEFAULT_FILL,
) -> Image.Image:
    """
    Aspect-preserving resize of ``image`` into a ``target_size`` square canvas.

    Padding on the shorter axis is filled with ``fill``.  An image that is
    already ``target_size x target_size`` is returned unscaled and unpadded.

    Args:
        image:       PIL image or uint8 pixel array.
        target_size: Side length of the square canvas.
        fill:        Background RGB color of the padding.

    Returns:
        An RGB PIL image of size (target_size, target_size).

    Raises:
        InvalidImage: If the input is missing or empty.
    """
    if target_size <= 0:
        raise ValueError(f"target_size must be positive, got {target_size}")

    rgb = to_rgb(image, fill)
    width, height = rgb.size

    if (width, height) == (target_size, target_size):
        return rgb.copy()

    left, top, new_width, new_height = letterbox_box(width, height, target_size)
    resized = rgb.resize((new_width, new_height), Image.BILINEAR)

    canvas = Image.new("RGB", (target_size, target_size), fill)
    canvas.paste(resized, (left, top))

    logger.debug(
        "Letterbox %dx%d -> %dx%d at (%d, %d) on %dpx canvas",
        width, height, new_width, new_height, left, top, target_size,
    )
    return canvas


# ---------------------------------------------------------------------------
# Tensor serialization
# ---------------------------------------------------------------------------

def to_tensor(
    canvas: Image.Image,
    normalization: NormalizationScheme,
    layout: ChannelLayout,
) -> np.ndarray:
    """
    Normalize an RGB canvas and serialize it in the requested layout.

    Returns:
        float32 C-contiguous array, (H, W, 3) for HWC or (3, H, W) for CHW.
    """
    pixels = np.asarray(canvas.convert("RGB"), dtype=np.uint8)
    normalized = normalization.apply(pixels)

    if ChannelLayout(layout) is ChannelLayout.CHW:
        normalized = normalized.transpose(2, 0, 1)
    return np.ascontiguousarray(normalized, dtype=np.float32)


def preprocess(
    image: RawImage,
    target_size: int,
    normalization: NormalizationScheme,
    layout: ChannelLayout = ChannelLayout.CHW,
    fill: Tuple[int, int, int] = DEFAULT_FILL,
) -> np.ndarray:
    """Letterbox, normalize and serialize ``image`` in one call."""
    canvas = letterbox(image, target_size, fill)
    return to_tensor(canvas, normalization, layout)


class ImagePreprocessor:
    """
    The input contract of one embedding model variant.

    Binds target size, normalization and channel layout together so the
    pipeline cannot pair a model with the wrong preprocessing.

    Args:
        target_size:   Side length of the square model input (e.g. 224).
        normalization: NormalizationScheme or preset name.
        layout:        ChannelLayout or "hwc" / "chw".
        fill:          Letterbox background color.
    """

    def __init__(
        self,
        target_size: int = 224,
        normalization: Union[NormalizationScheme, str] = CLIP,
        layout: Union[ChannelLayout, str] = ChannelLayout.CHW,
        fill: Tuple[int, int, int] = DEFAULT_FILL,
    ):
        if isinstance(normalization, str):
            normalization = NormalizationScheme.from_name(normalization)
        if isinstance(layout, str):
            layout = layout.lower()
        self.target_size = target_size
        self.normalization = normalization
        self.layout = ChannelLayout(layout)
        self.fill = fill

    @classmethod
    def from_config(cls, config) -> "ImagePreprocessor":
        """Build the preprocessor described by a Config instance."""
        return cls(
            target_size=config.image_size,
            normalization=config.normalization,
            layout=config.channel_layout,
        )

    @property
    def tensor_shape(self) -> Tuple[int, int, int]:
        """Shape of the tensors this preprocessor produces."""
        if self.layout is ChannelLayout.CHW:
            return (3, self.target_size, self.target_size)
        return (self.target_size, self.target_size, 3)

    def letterbox(self, image: RawImage) -> Image.Image:
        """Return the letterboxed canvas (the image the model actually sees)."""
        return letterbox(image, self.target_size, self.fill)

    def __call__(self, image: RawImage) -> np.ndarray:
        return to_tensor(self.letterbox(image), self.normalization, self.layout)
