"""Shared data models for the image handler."""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional, Tuple, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeInt,
    PositiveInt,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

from .exceptions import InvalidImageEdits


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return (
        datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


class ImageFormat(str, Enum):
    """Formats the handler can decode and encode."""

    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"
    TIFF = "tiff"
    GIF = "gif"
    AVIF = "avif"

    @property
    def content_type(self) -> str:
        return f"image/{self.value}"

    @property
    def pillow_format(self) -> str:
        return self.value.upper()

    @property
    def extension(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: Any) -> Optional["ImageFormat"]:
        """Parse a format name, file extension or image content type.

        Returns ``None`` for anything that is not a supported format.
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str) or not value.strip():
            return None
        name = value.strip().lower()
        if name.startswith("image/"):
            name = name[len("image/"):].split(";")[0].strip()
        name = name.lstrip(".")
        if name in ("jpg", "pjpeg"):
            name = "jpeg"
        elif name == "tif":
            name = "tiff"
        try:
            return cls(name)
        except ValueError:
            return None


class FitMode(str, Enum):
    """How a resized image fits its target box."""

    COVER = "cover"
    CONTAIN = "contain"
    FILL = "fill"
    INSIDE = "inside"
    OUTSIDE = "outside"


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


WATERMARK_POSITIONS = (
    "top-left",
    "top",
    "top-right",
    "left",
    "center",
    "right",
    "bottom-left",
    "bottom",
    "bottom-right",
)


# --- Edit variants ---------------------------------------------------------


class _EditModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)


class ResizeEdit(_EditModel):
    width: Optional[PositiveInt] = None
    height: Optional[PositiveInt] = None
    fit: Optional[FitMode] = None
    position: Optional[str] = None
    background: Optional[str] = None


class FlattenEdit(_EditModel):
    background: Optional[str] = None


class RgbEdit(_EditModel):
    """Colour modulation; a channel left at zero is not modulated."""

    brightness: float = Field(0, ge=0)
    saturation: float = Field(0, ge=0)
    hue: float = 0
    lightness: float = 0

    @property
    def is_noop(self) -> bool:
        return not any((self.brightness, self.saturation, self.hue, self.lightness))


class ExtendEdit(_EditModel):
    top: NonNegativeInt = 0
    right: NonNegativeInt = 0
    bottom: NonNegativeInt = 0
    left: NonNegativeInt = 0
    background: Optional[str] = None


class WatermarkEdit(_EditModel):
    text: str = Field(min_length=1)
    position: str = "center"
    color: str = "#ffffff"
    opacity: float = Field(0.5, ge=0, le=1)
    font_size: PositiveInt = Field(48, alias="fontSize")
    padding: float = Field(20, ge=0, le=50)

    @field_validator("position")
    @classmethod
    def _known_position(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in WATERMARK_POSITIONS:
            raise ValueError(f"position must be one of {', '.join(WATERMARK_POSITIONS)}")
        return value


Quality = Annotated[int, Field(ge=1, le=100)]


class JpegOptions(_EditModel):
    quality: Optional[Quality] = None
    progressive: bool = False


class PngOptions(_EditModel):
    quality: Optional[Quality] = None
    compression_level: Optional[int] = Field(None, ge=0, le=9, alias="compressionLevel")


class WebpOptions(_EditModel):
    quality: Optional[Quality] = None
    lossless: bool = False


class TiffOptions(_EditModel):
    quality: Optional[Quality] = None
    compression: Optional[str] = None


class GifOptions(_EditModel):
    colours: Optional[int] = Field(None, ge=2, le=256)


class AvifOptions(_EditModel):
    quality: Optional[Quality] = None


EncodeOptions = Union[
    JpegOptions, PngOptions, WebpOptions, TiffOptions, GifOptions, AvifOptions
]

# Format blocks are mutually exclusive; the first one present wins.
FORMAT_OPTION_ORDER = (
    ImageFormat.JPEG,
    ImageFormat.PNG,
    ImageFormat.WEBP,
    ImageFormat.TIFF,
    ImageFormat.GIF,
    ImageFormat.AVIF,
)


class EditSet(_EditModel):
    """The allow-listed edits of a request.

    Field names are the allow-list: anything else is rejected on
    validation. Application order is fixed by the edit pipeline, never by
    the order keys arrive in.
    """

    resize: Optional[ResizeEdit] = None
    grayscale: bool = False
    flip: bool = False
    flop: bool = False
    rotate: Optional[float] = None
    background: Optional[str] = None
    flatten: Optional[FlattenEdit] = None
    rgb: Optional[RgbEdit] = None
    normalize: bool = False
    threshold: Optional[int] = Field(None, ge=0, le=255)
    sharpen: Optional[float] = Field(None, gt=0)
    blur: Optional[float] = Field(None, gt=0)
    extend: Optional[ExtendEdit] = None
    watermark: Optional[WatermarkEdit] = None
    jpeg: Optional[JpegOptions] = None
    png: Optional[PngOptions] = None
    webp: Optional[WebpOptions] = None
    tiff: Optional[TiffOptions] = None
    gif: Optional[GifOptions] = None
    avif: Optional[AvifOptions] = None

    @field_validator("flatten", "jpeg", "png", "webp", "tiff", "gif", "avif", mode="before")
    @classmethod
    def _flag_to_block(cls, value: Any) -> Any:
        if value is True:
            return {}
        if value is False:
            return None
        return value

    @field_validator("threshold", mode="before")
    @classmethod
    def _default_threshold(cls, value: Any) -> Any:
        if value is True:
            return 128
        if value is False:
            return None
        return value

    @field_validator("sharpen", "blur", mode="before")
    @classmethod
    def _default_sigma(cls, value: Any) -> Any:
        if value is True:
            return 1.0
        if value is False:
            return None
        return value

    @classmethod
    def parse(cls, data: Any) -> Optional["EditSet"]:
        """Validate a raw edits mapping, raising InvalidImageEdits on failure."""
        if data is None or isinstance(data, cls):
            return data
        if not isinstance(data, dict):
            raise InvalidImageEdits("Image edits must be an object.")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'edits'}: {err['msg']}"
                for err in e.errors()
            )
            raise InvalidImageEdits(f"Invalid image edits: {problems}") from e

    def format_options(self) -> Optional[Tuple[ImageFormat, EncodeOptions]]:
        for image_format in FORMAT_OPTION_ORDER:
            options = getattr(self, image_format.value)
            if options is not None:
                return image_format, options
        return None

    def canonical(self) -> Dict[str, Any]:
        """JSON-ready mapping with defaults dropped, used for fingerprinting."""
        return self.model_dump(mode="json", exclude_defaults=True)

    @property
    def is_empty(self) -> bool:
        return not self.canonical()


# --- Requests and artifacts ------------------------------------------------


class CanonicalRequest(BaseModel):
    """One normalised image request; immutable once built."""

    model_config = ConfigDict(frozen=True)

    source_bucket: str
    source_key: str
    edits: Optional[EditSet] = None
    output_format: Optional[ImageFormat] = None
    raw_image: bytes = Field(repr=False)
    declared_content_type: Optional[str] = None
    cache_control: Optional[str] = None
    expires: Optional[str] = None
    last_modified: Optional[str] = None
    seconds_to_expiry: Optional[int] = None
    headers: Optional[Dict[str, str]] = None

    @field_validator("edits", mode="before")
    @classmethod
    def _parse_edits(cls, value: Any) -> Any:
        return EditSet.parse(value)

    @field_validator("output_format", mode="before")
    @classmethod
    def _parse_output_format(cls, value: Any) -> Any:
        # Unsupported output formats are ignored rather than rejected.
        return ImageFormat.parse(value)


class ProcessedArtifact(BaseModel):
    """A finished, cacheable result; never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    fingerprint: str
    cache_key: str
    body: bytes = Field(repr=False)
    content_type: str
    width: int
    height: int
    size_bytes: int
    source_bucket: str
    source_key: str
    requested_edits: Optional[Dict[str, Any]] = None


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_item(self) -> Dict[str, Any]:
        """Document-store representation (camelCase keys, no nulls)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class MetadataRecord(_CamelModel):
    image_id: str
    bucket_name: str
    key: str
    format: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    size: Optional[int] = None
    content_type: Optional[str] = None
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    processing_error: Optional[str] = None
    access_count: int = 0
    last_accessed: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: Optional[str] = None
    requested_edits: Optional[Dict[str, Any]] = None


# --- Batch ingestion -------------------------------------------------------


class BatchTransformSpec(BaseModel):
    """One output variant produced for every uploaded object."""

    model_config = ConfigDict(frozen=True)

    width: int
    height: int
    suffix: str
    fit: Optional[FitMode] = None
    quality: Optional[int] = None
    watermark: Optional[Dict[str, Any]] = None
    output_format: Optional[ImageFormat] = None


class VariantResult(_CamelModel):
    transform_type: str
    status: str
    output_key: Optional[str] = None
    output_format: Optional[str] = None
    output_url: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


class BatchRecordResult(_CamelModel):
    id: str
    original_file_name: str
    original_bucket: str
    original_key: str
    original_format: str
    original_content_type: str
    processed_bucket: str
    processing_results: List[VariantResult] = Field(default_factory=list)
    processing_time_ms: int = 0
    created_at: str = Field(default_factory=utc_now_iso)
    status: str = "completed"

    def to_item(self) -> Dict[str, Any]:
        """Batch document, keyed by the processing id under ``imageId``."""
        item = super().to_item()
        item["imageId"] = self.id
        return item


# --- Events and results ----------------------------------------------------


class ImageHandlerEvent(_CamelModel):
    """Proxy-style request, the shape every inbound request is normalised to."""

    path: str = ""
    query_string_parameters: Dict[str, str] = Field(default_factory=dict)
    headers: Dict[str, Any] = Field(default_factory=dict)
    request_context: Dict[str, Any] = Field(default_factory=dict)

    @field_validator(
        "query_string_parameters", "headers", "request_context", mode="before"
    )
    @classmethod
    def _null_to_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("path", mode="before")
    @classmethod
    def _null_path(cls, value: Any) -> Any:
        return "" if value is None else value

    @property
    def is_alb(self) -> bool:
        return "elb" in self.request_context


class ExecutionResult(BaseModel):
    """Result shared by both delivery protocols."""

    status_code: int
    headers: Dict[str, Any] = Field(default_factory=dict)
    body: Union[bytes, str] = ""
    is_base64_encoded: bool = False

    def to_proxy_response(self) -> Dict[str, Any]:
        body = self.body
        if isinstance(body, bytes):
            body = body.decode("utf-8", errors="replace")
        return {
            "statusCode": self.status_code,
            "isBase64Encoded": self.is_base64_encoded,
            "headers": {k: v for k, v in self.headers.items() if v is not None},
            "body": body,
        }
