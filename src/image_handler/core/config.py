"""Environment-driven configuration for the image handler."""

import os
from typing import List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import ConfigurationError

DEFAULT_FALLBACK_CACHE_CONTROL = "max-age=31536000,public"
ARTIFACT_CACHE_CONTROL = "public, max-age=31536000"
DIRECT_RESPONSE_LIMIT_BYTES = 6 * 1024 * 1024
WRITE_BACK_SAFETY_MARGIN_MS = 1000


def _flag(environ: Mapping[str, str], name: str) -> bool:
    # Options are switched on only by the literal value "Yes".
    return environ.get(name) == "Yes"


def _first(environ: Mapping[str, str], *names: str) -> Optional[str]:
    for name in names:
        value = environ.get(name)
        if value:
            return value
    return None


class HandlerConfig(BaseModel):
    """Options recognised by the handler, read once per invocation."""

    model_config = ConfigDict(frozen=True)

    enable_cache: bool = False
    enable_metrics: bool = False
    cors_enabled: bool = False
    cors_origin: str = "*"
    enable_default_fallback_image: bool = False
    default_fallback_image_bucket: Optional[str] = None
    default_fallback_image_key: Optional[str] = None
    output_bucket: Optional[str] = None
    metadata_table_name: str = "image-metadata"
    source_buckets: List[str] = Field(default_factory=list)
    enable_watermark: bool = False
    watermark_text: str = "© Copyright"
    enable_s3_object_lambda: bool = False
    upload_prefix: str = "uploads/"
    variant_concurrency: int = Field(1, ge=1)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "HandlerConfig":
        """
        Build the configuration from environment variables.

        Args:
            environ: Mapping to read instead of ``os.environ`` (used by tests)

        Returns:
            HandlerConfig instance
        """
        env = os.environ if environ is None else environ
        source_buckets = [
            bucket.strip()
            for bucket in env.get("SOURCE_BUCKETS", "").split(",")
            if bucket.strip()
        ]
        try:
            concurrency = int(env.get("VARIANT_CONCURRENCY", "1"))
        except ValueError as e:
            raise ConfigurationError(
                f"VARIANT_CONCURRENCY must be an integer: {env.get('VARIANT_CONCURRENCY')}"
            ) from e

        return cls(
            enable_cache=_flag(env, "ENABLE_CACHE"),
            enable_metrics=_flag(env, "ENABLE_METRICS"),
            cors_enabled=_flag(env, "CORS_ENABLED"),
            cors_origin=env.get("CORS_ORIGIN") or "*",
            enable_default_fallback_image=_flag(env, "ENABLE_DEFAULT_FALLBACK_IMAGE"),
            default_fallback_image_bucket=env.get("DEFAULT_FALLBACK_IMAGE_BUCKET") or None,
            default_fallback_image_key=env.get("DEFAULT_FALLBACK_IMAGE_KEY") or None,
            output_bucket=_first(env, "OUTPUT_BUCKET_NAME", "OUTPUT_BUCKET"),
            metadata_table_name=_first(env, "METADATA_TABLE_NAME", "IMAGE_METADATA_TABLE")
            or "image-metadata",
            source_buckets=source_buckets,
            enable_watermark=_flag(env, "ENABLE_WATERMARK"),
            watermark_text=env.get("WATERMARK_TEXT") or "© Copyright",
            enable_s3_object_lambda=_flag(env, "ENABLE_S3_OBJECT_LAMBDA"),
            upload_prefix=env.get("UPLOAD_PREFIX") or "uploads/",
            variant_concurrency=max(concurrency, 1),
        )

    def require_output_bucket(self) -> str:
        if not self.output_bucket:
            raise ConfigurationError(
                "OUTPUT_BUCKET_NAME environment variable is not set"
            )
        return self.output_bucket

    @property
    def fallback_image_configured(self) -> bool:
        return bool(
            self.enable_default_fallback_image
            and self.default_fallback_image_bucket
            and self.default_fallback_image_key
        )
