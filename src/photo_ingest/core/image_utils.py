"""Image processing utilities for the photo ingestion pipeline."""

import io
import json
import re
from collections.abc import Iterable
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
from PIL import Image, ImageOps
from PIL.ExifTags import GPSTAGS, TAGS
from sklearn.cluster import KMeans

# Pillow format name, file extension, MIME type
FORMATS: Dict[str, Tuple[str, str, str]] = {
    "webp": ("WEBP", "webp", "image/webp"),
    "jpeg": ("JPEG", "jpg", "image/jpeg"),
    "png": ("PNG", "png", "image/png"),
    "avif": ("AVIF", "avif", "image/avif"),
}

# Encoder quality per size; smaller derivatives trade quality for bytes.
SIZE_QUALITY = {"thumbnail": 60, "small": 80}
DEFAULT_QUALITY = 85

NAMED_COLORS: Dict[str, Tuple[int, int, int]] = {
    "red": (220, 40, 40),
    "orange": (245, 140, 30),
    "yellow": (240, 220, 50),
    "green": (60, 170, 70),
    "blue": (40, 90, 220),
    "purple": (130, 60, 170),
    "pink": (240, 150, 190),
    "brown": (130, 85, 50),
    "black": (15, 15, 15),
    "white": (245, 245, 245),
    "gray": (128, 128, 128),
}

EXTENSION_ALIASES = {"jpeg": "jpg", "svg+xml": "svg"}
_EXTENSION_RE = re.compile(r"^[a-z0-9]+$")
_SUBTYPE_RE = re.compile(r"^[a-z0-9+\-]+$")


def load_image(image_bytes: bytes) -> Image.Image:
    """Decode bytes into a fully loaded PIL image."""
    image = Image.open(io.BytesIO(image_bytes))
    image.load()
    return image


def render_derivative(
    img: Image.Image, width: Optional[int], fmt: str, quality: int = DEFAULT_QUALITY
) -> bytes:
    """
    Resize an image to `width` (never enlarging) and encode it.

    EXIF orientation is applied first so portrait photos stay upright.

    Args:
        img: Source PIL image
        width: Target width in pixels, or None to keep the original size
        fmt: Key of FORMATS ("webp", "jpeg", "png", "avif")
        quality: Encoder quality

    Returns:
        Encoded derivative bytes

    Raises:
        ValueError: If the format is unknown
    """
    if fmt not in FORMATS:
        raise ValueError(f"Unknown derivative format: {fmt}")
    pil_format = FORMATS[fmt][0]

    output = ImageOps.exif_transpose(img) or img
    if width and output.width > width:
        height = max(1, round(output.height * width / output.width))
        output = output.resize((width, height), Image.Resampling.LANCZOS)

    if pil_format == "JPEG" and output.mode not in ("RGB", "L"):
        output = output.convert("RGB")
    elif output.mode not in ("RGB", "RGBA", "L"):
        output = output.convert("RGBA" if "A" in output.getbands() else "RGB")

    buffer = io.BytesIO()
    output.save(buffer, format=pil_format, quality=quality)
    return buffer.getvalue()


def quality_for(size_name: str) -> int:
    return SIZE_QUALITY.get(size_name, DEFAULT_QUALITY)


def extract_exif_data(img: Image.Image) -> Dict[str, Any]:
    """
    Extract EXIF metadata from PIL Image, handling privacy concerns.

    GPS tags are left out of the returned dict; use extract_coordinates to
    read the location separately.

    Args:
        img: PIL Image to extract EXIF from

    Returns:
        Dictionary containing EXIF data and image info
    """
    exif_dict: Dict[str, Any] = {
        "width": img.width,
        "height": img.height,
        "format": img.format or "unknown",
        "mode": img.mode,
    }

    if hasattr(img, "_getexif"):
        exif_data_raw = img._getexif()  # type: ignore[attr-defined]
        if exif_data_raw is not None:
            for tag_id, value in exif_data_raw.items():
                tag = TAGS.get(tag_id, tag_id)

                if "gps" in str(tag).lower():
                    continue

                # Convert complex types to strings for JSON serialization
                processed_value: Union[str, int, float]
                if isinstance(value, bytes):
                    try:
                        processed_value = value.decode("utf-8")
                    except UnicodeDecodeError:
                        processed_value = str(value)
                elif isinstance(value, (str, int, float)):
                    processed_value = value
                elif isinstance(value, Iterable):
                    processed_value = str(value)
                else:
                    try:
                        processed_value = float(value)
                    except (TypeError, ValueError):
                        processed_value = str(value)

                exif_dict[str(tag)] = processed_value

    return exif_dict


def _dms_to_degrees(dms: Any, ref: str) -> float:
    degrees, minutes, seconds = (float(part) for part in dms)
    value = degrees + minutes / 60.0 + seconds / 3600.0
    return -value if ref in ("S", "W") else value


def extract_coordinates(img: Image.Image) -> Optional[Dict[str, float]]:
    """Read GPS latitude/longitude from EXIF, or None when absent or invalid."""
    if not hasattr(img, "_getexif"):
        return None
    exif_data_raw = img._getexif()  # type: ignore[attr-defined]
    if not exif_data_raw:
        return None

    gps_raw = None
    for tag_id, value in exif_data_raw.items():
        if TAGS.get(tag_id) == "GPSInfo":
            gps_raw = value
            break
    if not isinstance(gps_raw, dict):
        return None

    gps = {GPSTAGS.get(key, key): value for key, value in gps_raw.items()}
    try:
        latitude = _dms_to_degrees(gps["GPSLatitude"], gps.get("GPSLatitudeRef", "N"))
        longitude = _dms_to_degrees(gps["GPSLongitude"], gps.get("GPSLongitudeRef", "E"))
    except (KeyError, TypeError, ValueError, ZeroDivisionError):
        return None
    return validate_coordinates({"latitude": latitude, "longitude": longitude})


def validate_coordinates(coordinates: Any) -> Optional[Dict[str, float]]:
    """Return `{"latitude", "longitude"}` when both are in range, else None."""
    if not coordinates:
        return None
    if isinstance(coordinates, str):
        try:
            coordinates = json.loads(coordinates)
        except ValueError:
            return None
    if hasattr(coordinates, "model_dump"):
        coordinates = coordinates.model_dump()
    if not isinstance(coordinates, dict):
        return None
    try:
        lat = float(coordinates["latitude"])
        lng = float(coordinates["longitude"])
    except (KeyError, TypeError, ValueError):
        return None
    if np.isnan(lat) or np.isnan(lng):
        return None
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None
    return {"latitude": lat, "longitude": lng}


def nearest_named_color(rgb: Iterable[float]) -> str:
    """Map an RGB triple to the closest entry of NAMED_COLORS."""
    point = np.asarray(list(rgb), dtype=float)
    names = list(NAMED_COLORS)
    palette = np.asarray([NAMED_COLORS[name] for name in names], dtype=float)
    distances = np.linalg.norm(palette - point, axis=1)
    return names[int(np.argmin(distances))]


def extract_dominant_colors(img: Image.Image, k: int = 3) -> List[str]:
    """
    Find the dominant named colors of an image with K-means clustering.

    The image is downsampled before clustering; clusters are ordered by the
    number of pixels they hold and mapped onto NAMED_COLORS.

    Args:
        img: PIL Image
        k: Number of color clusters

    Returns:
        Distinct color names, most dominant first
    """
    sample = img.convert("RGB")
    sample.thumbnail((64, 64))
    pixels = np.array(sample).reshape(-1, 3).astype(float)

    n_clusters = max(1, min(k, len(np.unique(pixels, axis=0))))
    kmeans = KMeans(n_clusters=n_clusters, random_state=42, n_init="auto")
    labels = kmeans.fit_predict(pixels)

    counts = np.bincount(labels, minlength=n_clusters)
    colors: List[str] = []
    for cluster in np.argsort(counts)[::-1]:
        name = nearest_named_color(kmeans.cluster_centers_[cluster])
        if name not in colors:
            colors.append(name)
    return colors


def file_extension(file_name: str = "", content_type: str = "") -> str:
    """
    Choose the raw upload extension from the file name or the MIME subtype.

    Falls back to "bin" when neither yields a short alphanumeric extension.
    """
    if "." in file_name:
        ext = file_name.rsplit(".", 1)[-1].lower()
        if ext and len(ext) <= 5 and _EXTENSION_RE.match(ext):
            return ext

    if "/" in content_type:
        subtype = content_type.split("/", 1)[1].lower()
        if subtype and _SUBTYPE_RE.match(subtype):
            return EXTENSION_ALIASES.get(subtype, subtype)

    return "bin"


def raw_object_key(raw_prefix: str, owner_id: str, upload_id: str, extension: str) -> str:
    """Object key of a client upload; unique per (owner, upload id)."""
    safe_owner = re.sub(r"[^A-Za-z0-9_\-]", "-", owner_id) or "anonymous"
    return f"{raw_prefix.rstrip('/')}/{safe_owner}/{upload_id}.{extension}"


def derivative_object_key(prefix: str, image_id: str, size_name: str, fmt: str) -> str:
    """Object key of one derivative, e.g. `photo-app-images/<id>-small.webp`."""
    return f"{prefix.rstrip('/')}/{image_id}-{size_name}.{FORMATS[fmt][1]}"


def content_type_for(fmt: str) -> str:
    return FORMATS[fmt][2]
