"""Image preprocessing: decode raw bytes and build classifier input tensors."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from ovrcurator.config import Settings

# Letterbox fill, matching a scale-to-fit crop option.
_PAD_VALUE = 0


class ImagePreprocessor:
    """Decodes images and fits them into a square model input."""

    def __init__(self, settings: Settings) -> None:
        self._default_size = settings.input_size
        self._max_pixels = settings.max_image_pixels

    def decode_image(self, image_bytes: bytes) -> NDArray[np.uint8]:
        """Decode raw image bytes into an RGB uint8 numpy array.

        EXIF orientation is applied before conversion.

        Raises:
            ValueError: If the image cannot be decoded or exceeds size limits.
        """
        try:
            with Image.open(io.BytesIO(image_bytes)) as img:
                width, height = img.size
                if width * height > self._max_pixels:
                    raise ValueError(f"Image too large: {width}x{height} exceeds {self._max_pixels} pixels")
                oriented = ImageOps.exif_transpose(img)
                rgb = oriented.convert("RGB")
        except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
            raise ValueError(f"Cannot decode image: {exc}") from exc
        return np.asarray(rgb, dtype=np.uint8)

    def to_tensor(self, image: NDArray[np.uint8], input_shape: Sequence[object]) -> NDArray[np.float32]:
        """Scale-to-fit ``image`` into the model input and return a batch of one.

        ``input_shape`` is the ONNX input shape; symbolic dimensions fall back
        to the configured input size. Both NCHW and NHWC layouts are supported.
        Pixel values are scaled to [0, 1].
        """
        channels_first = len(input_shape) == 4 and input_shape[1] == 3
        if channels_first:
            height, width = input_shape[2], input_shape[3]
        elif len(input_shape) == 4:
            height, width = input_shape[1], input_shape[2]
        else:
            height = width = None
        target_h = height if isinstance(height, int) and height > 0 else self._default_size
        target_w = width if isinstance(width, int) and width > 0 else self._default_size

        fitted = _letterbox(image, target_w, target_h)
        tensor = fitted.astype(np.float32) / 255.0
        if channels_first:
            tensor = tensor.transpose(2, 0, 1)
        return tensor[np.newaxis, ...]


def _letterbox(image: NDArray[np.uint8], width: int, height: int) -> NDArray[np.uint8]:
    src = Image.fromarray(image)
    scale = min(width / src.width, height / src.height)
    new_size = (max(1, round(src.width * scale)), max(1, round(src.height * scale)))
    resized = src.resize(new_size, resample=Image.Resampling.BILINEAR)

    canvas = Image.new("RGB", (width, height), (_PAD_VALUE, _PAD_VALUE, _PAD_VALUE))
    canvas.paste(resized, ((width - new_size[0]) // 2, (height - new_size[1]) // 2))
    return np.asarray(canvas, dtype=np.uint8)
