"""S3-compatible storage driver for a content-addressable blob registry."""

__version__ = "0.1.0"
