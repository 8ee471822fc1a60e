"""Upload module - hands aggregated coverage to a pinned local uploader."""

from .uploader import Uploader, UploaderConfig, UploadResult, file_sha256

__all__ = ["Uploader", "UploaderConfig", "UploadResult", "file_sha256"]
