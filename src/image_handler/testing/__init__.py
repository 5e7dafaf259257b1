"""Testing utilities and fakes for the image handler."""

from .fakes import (
    FakeLambdaContext,
    FakeLogger,
    FakeMetadataTable,
    FakeS3Client,
    FakeStreamingBody,
    S3Bucket,
    S3Object,
    client_error,
    create_test_image,
    encode_image_request,
    setup_test_s3_environment,
)

__all__ = [
    "FakeLambdaContext",
    "FakeLogger",
    "FakeMetadataTable",
    "FakeS3Client",
    "FakeStreamingBody",
    "S3Bucket",
    "S3Object",
    "client_error",
    "create_test_image",
    "encode_image_request",
    "setup_test_s3_environment",
]
