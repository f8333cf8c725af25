"""
Image Normalizer — convert, compress and rename images before upload.

Pipeline per file:
1. Convert formats browsers cannot render (HEIC/HEIF, TIFF, BMP) to JPEG
2. Honour EXIF orientation and resize to a max dimension (default 1920px)
3. Re-encode, stepping quality down until the file fits the size budget
4. Assign a unique name: <timestamp-ms>-<random>-<slug>.<ext>

Output order always matches input order; the placeholder manager maps
results back to placeholders by index.

A conversion or decode failure raises ProcessingError and aborts the
whole batch.
"""

from __future__ import annotations

import io
import logging
import re
import secrets
import string
import time
from typing import List, Optional, Sequence

from PIL import Image, ImageOps, UnidentifiedImageError
from pillow_heif import register_heif_opener

from ..errors import ProcessingError
from .files import MediaFile, ProcessedImage

register_heif_opener()

logger = logging.getLogger(__name__)

# ── Defaults ─────────────────────────────────────────────────

MAX_DIMENSION = 1920        # px, longest side
MAX_SIZE_MB = 1.0           # target upper bound after compression
CONVERSION_QUALITY = 90     # JPEG quality for format conversion
START_QUALITY = 90          # first re-encode attempt
MIN_QUALITY = 40            # never go below this
QUALITY_STEP = 10

SLUG_MAX_LENGTH = 30
RANDOM_LENGTH = 6
RANDOM_ALPHABET = string.ascii_lowercase + string.digits

HEIC_MIMES = {"image/heic", "image/heif"}
HEIC_EXTENSIONS = {"heic", "heif"}
CONVERT_MIMES = {"image/tiff", "image/bmp", "image/x-ms-bmp"}

# Left alone: vector, animated, or not raster images at all
PASSTHROUGH_MIMES = {"image/svg+xml", "image/gif"}

# Formats we re-encode in place; anything else becomes JPEG
REENCODE_FORMATS = {"JPEG", "PNG", "WEBP"}

# Everything Pillow raises for bad, oversized or unsupported image data
IMAGE_ERRORS = (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError)


# ── Naming ───────────────────────────────────────────────────


def slugify(name: str) -> str:
    """Lower-case the stem of *name* and collapse everything else to '-'."""
    stem = re.sub(r"\.[^/.]+$", "", name)
    slug = re.sub(r"[^a-z0-9]+", "-", stem.lower()).strip("-")
    return slug[:SLUG_MAX_LENGTH].rstrip("-") or "image"


def generate_unique_filename(name: str, now_ms: Optional[int] = None) -> str:
    """
    Build a collision-resistant server filename for *name*.

    Examples:
        generate_unique_filename("Beach Day.JPG")
            → "1690000001234-k3x9qa-beach-day.JPG"
    """
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    random_part = "".join(secrets.choice(RANDOM_ALPHABET) for _ in range(RANDOM_LENGTH))
    ext = name.rsplit(".", 1)[-1] if "." in name else "jpg"
    return f"{timestamp}-{random_part}-{slugify(name)}.{ext}"


# ── Conversion ───────────────────────────────────────────────


def is_heic(file: MediaFile) -> bool:
    return file.extension in HEIC_EXTENSIONS or file.mime_type.lower() in HEIC_MIMES


def needs_conversion(file: MediaFile) -> bool:
    """True for images that must become JPEG before they can be displayed."""
    return is_heic(file) or file.mime_type.lower() in CONVERT_MIMES


def convert_to_jpeg(file: MediaFile, quality: int = CONVERSION_QUALITY) -> MediaFile:
    """
    Convert a HEIC/TIFF/BMP image to JPEG.

    Raises:
        ProcessingError: if the image cannot be decoded or encoded.
    """
    logger.info(f"Converting {file.name} ({file.mime_type}) to JPEG")
    try:
        with Image.open(io.BytesIO(file.data)) as img:
            img = ImageOps.exif_transpose(img)
            img = _flatten_to_rgb(img)
            buf = io.BytesIO()
            img.save(buf, format="JPEG", quality=quality)
    except IMAGE_ERRORS as e:
        raise ProcessingError(f"Failed to convert image: {file.name} ({e})", file_name=file.name)

    stem = re.sub(r"\.[^/.]+$", "", file.name)
    converted = MediaFile(name=f"{stem}.jpg", data=buf.getvalue(), mime_type="image/jpeg")
    logger.info(
        f"Conversion successful: {file.name} → {converted.name} "
        f"({converted.size / 1024 / 1024:.2f}MB)"
    )
    return converted


# ── Compression ──────────────────────────────────────────────


def compress_image(
    file: MediaFile,
    *,
    max_size_mb: float = MAX_SIZE_MB,
    max_dimension: int = MAX_DIMENSION,
) -> MediaFile:
    """
    Shrink an image to fit *max_dimension* and *max_size_mb*.

    Returns the original file when it is not a raster image, is already
    within budget, or re-encoding would not make it smaller.

    Raises:
        ProcessingError: if the image data cannot be decoded or encoded.
    """
    mime_type = file.mime_type.lower()
    if not mime_type.startswith("image/") or mime_type in PASSTHROUGH_MIMES:
        return file

    max_bytes = int(max_size_mb * 1024 * 1024)

    try:
        img = Image.open(io.BytesIO(file.data))
        img.load()
    except IMAGE_ERRORS as e:
        raise ProcessingError(f"Cannot decode image: {file.name} ({e})", file_name=file.name)

    fmt = (img.format or "JPEG").upper()
    if fmt not in REENCODE_FORMATS:
        fmt = "JPEG"

    # ── Orient and resize if over max dimension ──────────
    try:
        img = ImageOps.exif_transpose(img)
        w, h = img.size
        resized = max(w, h) > max_dimension
        if resized:
            ratio = max_dimension / max(w, h)
            new_size = (max(1, int(w * ratio)), max(1, int(h * ratio)))
            img = img.resize(new_size, Image.LANCZOS)
            logger.debug(f"Resized {file.name}: {w}x{h} → {new_size[0]}x{new_size[1]}")

        if not resized and file.size <= max_bytes:
            return file

        if fmt == "JPEG":
            img = _flatten_to_rgb(img)
        elif fmt == "WEBP" and img.mode == "P":
            img = img.convert("RGBA")
    except IMAGE_ERRORS as e:
        raise ProcessingError(f"Cannot resize image: {file.name} ({e})", file_name=file.name)

    # ── Encode, lowering quality until it fits ───────────
    quality = START_QUALITY
    try:
        while True:
            data = _encode(img, fmt, quality)
            if len(data) <= max_bytes or fmt == "PNG" or quality <= MIN_QUALITY:
                break
            quality -= QUALITY_STEP
    except IMAGE_ERRORS as e:
        raise ProcessingError(f"Cannot compress image: {file.name} ({e})", file_name=file.name)

    if not resized and len(data) >= file.size:
        return file

    logger.info(
        f"Compressed {file.name}: {file.size / 1024 / 1024:.2f}MB → "
        f"{len(data) / 1024 / 1024:.2f}MB ({fmt}, q={quality})"
    )
    return MediaFile(name=file.name, data=data, mime_type=f"image/{fmt.lower()}")


def _encode(img: Image.Image, fmt: str, quality: int) -> bytes:
    buf = io.BytesIO()
    if fmt == "PNG":
        img.save(buf, format="PNG", optimize=True)
    elif fmt == "WEBP":
        img.save(buf, format="WEBP", quality=quality, method=4)
    else:
        img.save(buf, format="JPEG", quality=quality, optimize=True)
    return buf.getvalue()


def _flatten_to_rgb(img: Image.Image) -> Image.Image:
    """JPEG has no alpha: composite transparent images onto white."""
    if img.mode in ("RGB", "L"):
        return img
    if img.mode == "P":
        img = img.convert("RGBA")
    if img.mode in ("RGBA", "LA"):
        bg = Image.new("RGB", img.size, (255, 255, 255))
        bg.paste(img, mask=img.split()[-1])
        return bg
    return img.convert("RGB")


# ── Batch ────────────────────────────────────────────────────


class ImageNormalizer:
    """
    Runs the conversion → compression → rename pipeline over a batch.

    Blocking (Pillow does the work); callers on an event loop should run
    ``process_images`` in a worker thread.
    """

    def __init__(
        self,
        max_size_mb: float = MAX_SIZE_MB,
        max_dimension: int = MAX_DIMENSION,
    ):
        self.max_size_mb = max_size_mb
        self.max_dimension = max_dimension

    def process_image(self, file: MediaFile) -> ProcessedImage:
        source = file
        if needs_conversion(file):
            source = convert_to_jpeg(file)

        compressed = compress_image(
            source,
            max_size_mb=self.max_size_mb,
            max_dimension=self.max_dimension,
        )

        new_name = generate_unique_filename(source.name)
        renamed = compressed.renamed(new_name)
        return ProcessedImage(
            file=renamed,
            original_name=file.name,
            new_name=new_name,
            size=renamed.size,
        )

    def process_images(self, files: Sequence[MediaFile]) -> List[ProcessedImage]:
        """
        Normalize every file, preserving order.

        Raises:
            ProcessingError: on the first file that cannot be processed;
                no partial result is returned.
        """
        processed = [self.process_image(f) for f in files]

        for i, img in enumerate(processed, start=1):
            logger.info(f"  {i}. {img.original_name} → {img.new_name} ({img.size / 1024:.2f} KB)")

        return processed
