"""Storage: upload of referenced files to the vendor object store."""

from __future__ import annotations

from .references import FileReferencePipeline, LoadedFile, is_base64_data_url

__all__ = ["FileReferencePipeline", "LoadedFile", "is_base64_data_url"]
