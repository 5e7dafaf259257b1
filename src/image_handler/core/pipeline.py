"""Edit pipeline executor.

Applies the allow-listed edits of an ``EditSet`` to decoded image data in a
fixed order, then encodes the result with the first format block present.
Everything here is CPU-bound and synchronous; async callers run it through
``asyncio.to_thread``.
"""

import io
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import numpy as np
from PIL import (
    Image,
    ImageDraw,
    ImageEnhance,
    ImageFile,
    ImageFilter,
    ImageFont,
    ImageOps,
)

from .error_handling import engine_errors_as
from .exceptions import ImageEditsError, ImageFormatError, ImageProcessingError
from .image_utils import (
    OPAQUE_BLACK,
    RGBA,
    TRANSPARENT_BLACK,
    hex_to_rgb,
    hex_to_rgba,
    pillow_text_anchor,
    resize_centering,
    text_position,
)
from .models import (
    EditSet,
    EncodeOptions,
    FitMode,
    GifOptions,
    ImageFormat,
    JpegOptions,
    PngOptions,
    TiffOptions,
    WebpOptions,
)

# Decoding is best-effort: truncated uploads are decoded as far as possible.
ImageFile.LOAD_TRUNCATED_IMAGES = True

RESAMPLE = Image.Resampling.LANCZOS

# Application order of the edit steps; keys of an EditSet never change it.
PIPELINE_ORDER = (
    "resize",
    "grayscale",
    "flip",
    "flop",
    "rotate",
    "background",
    "flatten",
    "rgb",
    "normalize",
    "threshold",
    "sharpen",
    "blur",
    "extend",
    "watermark",
)

_WORKING_MODES = ("RGB", "RGBA", "L", "LA")
_DEFAULT_QUALITY = {ImageFormat.JPEG: 80, ImageFormat.WEBP: 80, ImageFormat.AVIF: 50}


@dataclass(frozen=True)
class ImageInfo:
    """Header-level facts about an encoded image."""

    format: Optional[str]
    width: int
    height: int
    mode: str

    @property
    def image_format(self) -> Optional[ImageFormat]:
        return ImageFormat.parse(self.format)


def _has_alpha(image: Image.Image) -> bool:
    return image.mode in ("RGBA", "LA")


def decode_image(data: bytes) -> Tuple[Image.Image, Optional[str]]:
    """Decode image bytes into a working-mode image and its source format."""
    image = Image.open(io.BytesIO(data))
    source_format = image.format
    image.load()
    if image.mode not in _WORKING_MODES:
        transparent = image.mode in ("PA", "RGBa", "La") or "transparency" in image.info
        image = image.convert("RGBA" if transparent else "RGB")
    return image, source_format


def _fillable(image: Image.Image, color: RGBA) -> Image.Image:
    """Convert so ``color`` can be used as a fill colour for ``image``."""
    if color[3] < 255 or _has_alpha(image):
        return image if image.mode == "RGBA" else image.convert("RGBA")
    return image if image.mode == "RGB" else image.convert("RGB")


def _fill_value(image: Image.Image, color: RGBA) -> Tuple[int, ...]:
    return color if image.mode == "RGBA" else color[:3]


def _flatten_onto(image: Image.Image, color: RGBA) -> Image.Image:
    if not _has_alpha(image):
        return image
    rgba = image.convert("RGBA")
    canvas = Image.new("RGB", rgba.size, color[:3])
    canvas.paste(rgba, mask=rgba.getchannel("A"))
    return canvas


def _on_colour_bands(
    image: Image.Image, operation: Callable[[Image.Image], Image.Image]
) -> Image.Image:
    """Apply ``operation`` to the colour bands, leaving alpha untouched."""
    if not _has_alpha(image):
        return operation(image)
    alpha = image.getchannel("A")
    colour = operation(image.convert("RGB" if image.mode == "RGBA" else "L"))
    colour = colour.convert("RGBA" if colour.mode != "L" else "LA")
    colour.putalpha(alpha)
    return colour


class EditPipeline:
    """Pure image processing service with no I/O dependencies."""

    def probe(self, data: bytes) -> ImageInfo:
        """Read format and dimensions from the image header only."""
        with engine_errors_as(ImageProcessingError, "probe"):
            with Image.open(io.BytesIO(data)) as image:
                return ImageInfo(
                    format=image.format.lower() if image.format else None,
                    width=image.width,
                    height=image.height,
                    mode=image.mode,
                )

    def apply(self, data: bytes, edits: EditSet) -> bytes:
        """
        Decode ``data``, apply ``edits`` in pipeline order and encode.

        The encoding is taken from the first format block of ``edits``;
        without one the source format is kept.

        Raises:
            ImageEditsError: if decoding or any edit step fails
        """
        with engine_errors_as(ImageEditsError, "apply_edits"):
            image, source_format = decode_image(data)
            for step in PIPELINE_ORDER:
                if self._requested(edits, step):
                    image = getattr(self, f"_{step}")(image, edits)

            target = edits.format_options()
            if target is not None:
                image_format, options = target
            else:
                image_format = ImageFormat.parse(source_format) or ImageFormat.PNG
                options = None
            return self.encode(image, image_format, options)

    def format(
        self,
        data: bytes,
        source_format: Optional[ImageFormat],
        target_format: Optional[ImageFormat],
    ) -> bytes:
        """Re-encode ``data`` as ``target_format`` (source format when None)."""
        with engine_errors_as(ImageFormatError, "format"):
            image, decoded_format = decode_image(data)
            image_format = (
                target_format
                or source_format
                or ImageFormat.parse(decoded_format)
                or ImageFormat.PNG
            )
            return self.encode(image, image_format, None)

    def encode(
        self,
        image: Image.Image,
        image_format: ImageFormat,
        options: Optional[EncodeOptions] = None,
    ) -> bytes:
        image, params = self._prepare(image, image_format, options)
        buffer = io.BytesIO()
        image.save(buffer, format=image_format.pillow_format, **params)
        return buffer.getvalue()

    @staticmethod
    def _requested(edits: EditSet, step: str) -> bool:
        value = getattr(edits, step)
        if step == "rgb":
            return value is not None and not value.is_noop
        if step == "rotate":
            return value is not None and value % 360 != 0
        if step == "threshold":
            return bool(value)
        return bool(value) if isinstance(value, bool) else value is not None

    # --- edit steps ---------------------------------------------------------

    def _resize(self, image: Image.Image, edits: EditSet) -> Image.Image:
        spec = edits.resize
        width, height = spec.width, spec.height
        if width is None and height is None:
            return image

        source_width, source_height = image.size
        if width is None or height is None:
            # One dimension given: keep the aspect ratio.
            if width is None:
                width = max(1, round(source_width * height / source_height))
            else:
                height = max(1, round(source_height * width / source_width))
            return image.resize((width, height), RESAMPLE)

        fit = spec.fit or FitMode.COVER
        centering = resize_centering(spec.position)
        if fit is FitMode.FILL:
            return image.resize((width, height), RESAMPLE)
        if fit is FitMode.COVER:
            return ImageOps.fit(image, (width, height), RESAMPLE, centering=centering)
        if fit is FitMode.CONTAIN:
            background = hex_to_rgba(spec.background)
            image = _fillable(image, background)
            return ImageOps.pad(
                image,
                (width, height),
                RESAMPLE,
                color=_fill_value(image, background),
                centering=centering,
            )

        if fit is FitMode.INSIDE:
            ratio = min(width / source_width, height / source_height)
        else:
            ratio = max(width / source_width, height / source_height)
        size = (
            max(1, round(source_width * ratio)),
            max(1, round(source_height * ratio)),
        )
        return image.resize(size, RESAMPLE)

    def _grayscale(self, image: Image.Image, edits: EditSet) -> Image.Image:
        return image.convert("LA" if _has_alpha(image) else "L")

    def _flip(self, image: Image.Image, edits: EditSet) -> Image.Image:
        return ImageOps.flip(image)

    def _flop(self, image: Image.Image, edits: EditSet) -> Image.Image:
        return ImageOps.mirror(image)

    def _rotate(self, image: Image.Image, edits: EditSet) -> Image.Image:
        angle = edits.rotate % 360
        quarter_turns = {
            90: Image.Transpose.ROTATE_270,
            180: Image.Transpose.ROTATE_180,
            270: Image.Transpose.ROTATE_90,
        }
        if angle in quarter_turns:
            return image.transpose(quarter_turns[angle])

        fill = hex_to_rgba(edits.background, TRANSPARENT_BLACK)
        image = _fillable(image, fill)
        # Pillow rotates counter-clockwise.
        return image.rotate(
            -angle,
            resample=Image.Resampling.BICUBIC,
            expand=True,
            fillcolor=_fill_value(image, fill),
        )

    def _background(self, image: Image.Image, edits: EditSet) -> Image.Image:
        return _flatten_onto(image, hex_to_rgba(edits.background, OPAQUE_BLACK))

    def _flatten(self, image: Image.Image, edits: EditSet) -> Image.Image:
        return _flatten_onto(image, hex_to_rgba(edits.flatten.background, OPAQUE_BLACK))

    def _rgb(self, image: Image.Image, edits: EditSet) -> Image.Image:
        rgb = edits.rgb
        alpha = image.getchannel("A") if _has_alpha(image) else None
        modulated = image.convert("RGB")

        if rgb.brightness:
            modulated = ImageEnhance.Brightness(modulated).enhance(rgb.brightness)
        if rgb.saturation:
            modulated = ImageEnhance.Color(modulated).enhance(rgb.saturation)
        if rgb.hue:
            hsv = np.asarray(modulated.convert("HSV"), dtype=np.int32)
            shift = round(rgb.hue / 360 * 256)
            hsv[..., 0] = (hsv[..., 0] + shift) % 256
            bands = [Image.fromarray(hsv[..., i].astype(np.uint8)) for i in range(3)]
            modulated = Image.merge("HSV", bands).convert("RGB")
        if rgb.lightness:
            pixels = np.asarray(modulated, dtype=np.int32) + round(rgb.lightness * 2.55)
            modulated = Image.fromarray(np.clip(pixels, 0, 255).astype(np.uint8))

        if alpha is not None:
            modulated.putalpha(alpha)
        return modulated

    def _normalize(self, image: Image.Image, edits: EditSet) -> Image.Image:
        return _on_colour_bands(image, ImageOps.autocontrast)

    def _threshold(self, image: Image.Image, edits: EditSet) -> Image.Image:
        level = edits.threshold
        alpha = image.getchannel("A") if _has_alpha(image) else None
        binary = image.convert("L").point(lambda value: 255 if value >= level else 0)
        if alpha is not None:
            binary = Image.merge("LA", (binary, alpha))
        return binary

    def _sharpen(self, image: Image.Image, edits: EditSet) -> Image.Image:
        sharpen = ImageFilter.UnsharpMask(radius=edits.sharpen, percent=150, threshold=3)
        return _on_colour_bands(image, lambda bands: bands.filter(sharpen))

    def _blur(self, image: Image.Image, edits: EditSet) -> Image.Image:
        return image.filter(ImageFilter.GaussianBlur(radius=edits.blur))

    def _extend(self, image: Image.Image, edits: EditSet) -> Image.Image:
        extend = edits.extend
        fill = hex_to_rgba(extend.background, TRANSPARENT_BLACK)
        image = _fillable(image, fill)
        size = (
            image.width + extend.left + extend.right,
            image.height + extend.top + extend.bottom,
        )
        canvas = Image.new(image.mode, size, _fill_value(image, fill))
        canvas.paste(image, (extend.left, extend.top))
        return canvas

    def _watermark(self, image: Image.Image, edits: EditSet) -> Image.Image:
        watermark = edits.watermark
        had_alpha = _has_alpha(image)
        base = image.convert("RGBA")

        # Text layer the size of the current image, composited centred.
        layer = Image.new("RGBA", base.size, TRANSPARENT_BLACK)
        draw = ImageDraw.Draw(layer)
        font = ImageFont.load_default(size=watermark.font_size)
        origin = (
            base.width * text_position(watermark.position, "x", watermark.padding) / 100,
            base.height * text_position(watermark.position, "y", watermark.padding) / 100,
        )
        colour = hex_to_rgb(watermark.color)
        draw.text(
            origin,
            watermark.text,
            font=font,
            fill=(colour["r"], colour["g"], colour["b"], round(watermark.opacity * 255)),
            anchor=pillow_text_anchor(watermark.position),
        )

        composed = Image.alpha_composite(base, layer)
        return composed if had_alpha else composed.convert("RGB")

    # --- encoding -----------------------------------------------------------

    def _prepare(
        self,
        image: Image.Image,
        image_format: ImageFormat,
        options: Optional[EncodeOptions],
    ) -> Tuple[Image.Image, Dict[str, Any]]:
        params: Dict[str, Any] = {}
        quality = getattr(options, "quality", None)

        if image_format is ImageFormat.JPEG:
            if image.mode not in ("RGB", "L"):
                image = image.convert("RGB")
            params["quality"] = quality or _DEFAULT_QUALITY[image_format]
            if isinstance(options, JpegOptions) and options.progressive:
                params["progressive"] = True
        elif image_format in (ImageFormat.WEBP, ImageFormat.AVIF):
            image = image.convert("RGBA" if _has_alpha(image) else "RGB")
            params["quality"] = quality or _DEFAULT_QUALITY[image_format]
            if isinstance(options, WebpOptions) and options.lossless:
                params["lossless"] = True
        elif image_format is ImageFormat.PNG:
            if isinstance(options, PngOptions) and options.compression_level is not None:
                params["compress_level"] = options.compression_level
            if quality:
                # Palette output trades colours for size, as quality implies.
                image = image.convert("RGBA").quantize(
                    colors=max(2, round(256 * quality / 100)),
                    method=Image.Quantize.FASTOCTREE,
                )
        elif image_format is ImageFormat.TIFF:
            if isinstance(options, TiffOptions) and options.compression:
                params["compression"] = options.compression
                if options.compression == "jpeg":
                    image = image.convert("RGB")
                    params["quality"] = quality or _DEFAULT_QUALITY[ImageFormat.JPEG]
        elif image_format is ImageFormat.GIF:
            if isinstance(options, GifOptions) and options.colours:
                image = image.convert("RGB").quantize(colors=options.colours)
        return image, params
