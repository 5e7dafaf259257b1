"""On-demand image transformation handler for S3."""

__version__ = "0.1.0"
