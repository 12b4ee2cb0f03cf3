"""Prepare run-result photos for OCR.

Phone screenshots and photos of finish-line screens are mostly light text on
dark UI (or the reverse) with glare. A hard black/white image reads far better
than the raw photo, so OCR always gets a binarized copy. The original bytes are
never modified; they are what gets stored and shown.
"""

from __future__ import annotations

import io

from PIL import Image, ImageOps, UnidentifiedImageError


MAX_WIDTH = 1000
THRESHOLD = 160
AUTOCONTRAST_CUTOFF = 1


class ImageDecodeError(ValueError):
    pass


def _open(data: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
        # Phones store rotation in EXIF; apply it so text is upright.
        return ImageOps.exif_transpose(img)
    # Pillow reports some broken PNG chunks as SyntaxError.
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError, SyntaxError) as e:
        raise ImageDecodeError(f"Not a decodable image ({len(data)} bytes)") from e


def _cap_width(img: Image.Image, max_width: int) -> Image.Image:
    w, h = img.size
    if w <= max_width:
        return img
    new_h = max(1, round(h * max_width / w))
    return img.resize((max_width, new_h), Image.LANCZOS)


def _binarize(gray: Image.Image, threshold: int) -> Image.Image:
    return gray.point(lambda p: 255 if p >= threshold else 0, "L")


def normalize_for_ocr(data: bytes, *, max_width: int = MAX_WIDTH, threshold: int = THRESHOLD) -> bytes:
    """Return PNG bytes: width <= max_width (never enlarged), grayscale,
    contrast-stretched and thresholded to pure black/white.

    Raises ImageDecodeError if data is not an image.
    """

    img = _open(data)
    img = _cap_width(img, max_width)
    gray = ImageOps.grayscale(img)
    gray = ImageOps.autocontrast(gray, cutoff=AUTOCONTRAST_CUTOFF)
    binary = _binarize(gray, threshold)

    bio = io.BytesIO()
    # PNG keeps the two-level image exact; JPEG would reintroduce grey pixels.
    binary.save(bio, format="PNG")
    return bio.getvalue()
