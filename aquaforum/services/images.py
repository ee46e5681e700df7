"""
Pre-upload image resizing for Aqua Forum.
Shrinks uploads to a bounded long side and re-encodes them as JPEG.
"""

import asyncio
import logging

from PIL import Image, UnidentifiedImageError

from aquaforum.services.results import ResizeResult

log = logging.getLogger("aquaforum.images")


def _resize_sync(input_path: str, output_path: str, max_long_side: int, quality: int) -> ResizeResult:
    with Image.open(input_path) as im:
        im = im.convert("RGB")
        # thumbnail() keeps the aspect ratio and never enlarges
        if max_long_side > 0 and max(im.size) > max_long_side:
            im.thumbnail((max_long_side, max_long_side), Image.Resampling.LANCZOS)
        im.save(output_path, format="JPEG", quality=quality, progressive=True, optimize=True)
        width, height = im.size
    return ResizeResult(
        success=True,
        input_path=input_path,
        output_path=output_path,
        width=width,
        height=height,
        format="JPEG",
        quality=quality,
    )


async def resize_image(input_path: str, output_path: str, max_long_side: int = 1024, quality: int = 85) -> ResizeResult:
    """
    Resize an image so its longer side is at most ``max_long_side``.

    Args:
        input_path: Source image (any format Pillow reads)
        output_path: Destination for the JPEG output
        max_long_side: Bound for the longer side; 0 disables resizing
        quality: JPEG quality (1-100)

    Returns:
        ResizeResult; on failure ``success`` is False and the caller should
        keep using the original file.
    """
    try:
        return await asyncio.to_thread(_resize_sync, input_path, output_path, max_long_side, quality)
    except (OSError, UnidentifiedImageError, ValueError) as e:
        log.error("Image resize error for %s: %s", input_path, e)
        return ResizeResult(success=False, input_path=input_path, error=str(e))
