"""Image processing utilities for the image handler."""

import re
from typing import Dict, Optional, Tuple

RGBA = Tuple[int, int, int, int]

TRANSPARENT_BLACK: RGBA = (0, 0, 0, 0)
OPAQUE_BLACK: RGBA = (0, 0, 0, 255)

_SHORT_HEX = re.compile(r"^#?([0-9a-f])([0-9a-f])([0-9a-f])$", re.IGNORECASE)
_LONG_HEX = re.compile(r"^#?([0-9a-f]{2})([0-9a-f]{2})([0-9a-f]{2})$", re.IGNORECASE)

EXTENSION_CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".tiff": "image/tiff",
    ".svg": "image/svg+xml",
}

# Fractional (x, y) centring for each resize position keyword.
_POSITION_CENTERING = {
    "top": (0.5, 0.0),
    "north": (0.5, 0.0),
    "right top": (1.0, 0.0),
    "northeast": (1.0, 0.0),
    "right": (1.0, 0.5),
    "east": (1.0, 0.5),
    "right bottom": (1.0, 1.0),
    "southeast": (1.0, 1.0),
    "bottom": (0.5, 1.0),
    "south": (0.5, 1.0),
    "left bottom": (0.0, 1.0),
    "southwest": (0.0, 1.0),
    "left": (0.0, 0.5),
    "west": (0.0, 0.5),
    "left top": (0.0, 0.0),
    "northwest": (0.0, 0.0),
}


def expand_hex(value: str) -> Optional[str]:
    """
    Normalise a hex colour to ``#RRGGBB``.

    Shorthand ``#RGB`` doubles each nibble, so ``"#0AF"`` becomes
    ``"#00AAFF"``. Returns None when the value is not a hex colour.
    """
    if not isinstance(value, str):
        return None
    value = value.strip()
    short = _SHORT_HEX.match(value)
    if short:
        value = "".join(nibble * 2 for nibble in short.groups())
    match = _LONG_HEX.match(value)
    if not match:
        return None
    return "#" + "".join(match.groups()).upper()


def hex_to_rgb(value: str) -> Dict[str, int]:
    """
    Convert a hex colour to ``{"r", "g", "b"}``.

    Unparseable input resolves to black instead of raising.
    """
    expanded = expand_hex(value)
    if expanded is None:
        return {"r": 0, "g": 0, "b": 0}
    return {
        "r": int(expanded[1:3], 16),
        "g": int(expanded[3:5], 16),
        "b": int(expanded[5:7], 16),
    }


def hex_to_rgba(value: Optional[str], default: RGBA = TRANSPARENT_BLACK) -> RGBA:
    """Colour tuple for Pillow; a missing colour falls back to ``default``."""
    if not value:
        return default
    rgb = hex_to_rgb(value)
    return (rgb["r"], rgb["g"], rgb["b"], 255)


def resize_centering(position: Optional[str]) -> Tuple[float, float]:
    """Translate a resize position keyword into Pillow centring fractions."""
    if not position:
        return (0.5, 0.5)
    key = " ".join(position.strip().lower().replace("-", " ").split())
    if key in _POSITION_CENTERING:
        return _POSITION_CENTERING[key]
    # "top right" and "right top" are the same corner.
    reordered = " ".join(sorted(key.split(), key=lambda word: word not in ("left", "right")))
    return _POSITION_CENTERING.get(reordered, (0.5, 0.5))


def text_anchor(position: str) -> str:
    """Horizontal text anchor for a watermark position."""
    if "left" in position:
        return "start"
    if "right" in position:
        return "end"
    return "middle"


def text_baseline(position: str) -> str:
    """Vertical text baseline for a watermark position."""
    if "top" in position:
        return "hanging"
    if "bottom" in position:
        return "baseline"
    return "middle"


def text_position(position: str, axis: str, padding: float) -> float:
    """Watermark text origin as a percentage of the image along ``axis``."""
    low, high = ("left", "right") if axis == "x" else ("top", "bottom")
    if low in position:
        return padding
    if high in position:
        return 100 - padding
    return 50


_PILLOW_HORIZONTAL = {"start": "l", "middle": "m", "end": "r"}
# Multiline text rejects the "t" and "b" vertical anchors.
_PILLOW_VERTICAL = {"hanging": "a", "middle": "m", "baseline": "s"}


def pillow_text_anchor(position: str) -> str:
    """Two-letter Pillow anchor equivalent to the watermark anchor/baseline."""
    return _PILLOW_HORIZONTAL[text_anchor(position)] + _PILLOW_VERTICAL[
        text_baseline(position)
    ]


def content_type_from_extension(extension: str) -> str:
    """Content type for a file extension such as ``.png``."""
    return EXTENSION_CONTENT_TYPES.get(extension.lower(), "application/octet-stream")


def file_extension(key: str) -> str:
    """Lower-cased extension of an object key including the dot, or ''."""
    name = key.rsplit("/", 1)[-1]
    if "." not in name:
        return ""
    return "." + name.rsplit(".", 1)[-1].lower()


def key_stem(key: str) -> str:
    """File name of an object key without directories and extensions."""
    name = key.rsplit("/", 1)[-1]
    return name.split(".")[0] or "image"
