"""File reference pipeline.

Turns a file or image URL from an inbound message into a vendor content
reference:

1. Precheck (HEAD): reachable and within the size limit. Skipped for
   base64 data URLs.
2. Load bytes: decode the data URL or stream the download with a size cap.
3. Acquire signed upload parameters and post the multipart form to the
   object store.
4. Images: fetch a download link. Other files: fetch a batch download link
   and wait for the content-safety scan via the poller.

Every failure raises ``FileReferenceError`` with one of the kinds
``oversize``, ``unreachable``, ``upload_failed``, ``scan_failed`` or
``scan_timeout``. References are resolved before any conversation session
opens, so a failed reference fails the completion without vendor traffic.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import mimetypes
import posixpath
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence
from urllib.parse import unquote, urlsplit

import httpx

from ..core.config import Valves
from ..core.errors import (
    FileReferenceError,
    TransportError,
    UpstreamBusinessError,
    UpstreamProtocolError,
)
from ..core.timing_logger import timed
from ..core.utils import new_uuid
from ..requests.poller import classify_scan_status, poll
from ..requests.vendor_client import VendorClient

LOGGER = logging.getLogger(__name__)

HttpClientFactory = Callable[[], httpx.AsyncClient]

_DATA_URL_PATTERN = re.compile(r"^data:(?P<mime>[^;,]*)(?:;[^,]*)?;base64,", re.IGNORECASE)

_IMAGE_MIME_TYPES = frozenset(
    {
        "image/jpeg",
        "image/jpg",
        "image/tiff",
        "image/png",
        "image/bmp",
        "image/gif",
        "image/svg+xml",
        "image/webp",
        "image/ico",
        "image/heic",
        "image/heif",
        "image/x-icon",
        "image/vnd.microsoft.icon",
        "image/x-png",
    }
)

_VENDOR_FAILURES = (TransportError, UpstreamProtocolError, UpstreamBusinessError)


@dataclass(frozen=True, slots=True)
class LoadedFile:
    """Bytes of a referenced file ready for upload."""

    filename: str
    data: bytes
    mime_type: str

    @property
    def is_image(self) -> bool:
        return self.mime_type in _IMAGE_MIME_TYPES


def is_base64_data_url(url: str) -> bool:
    return bool(_DATA_URL_PATTERN.match(url))


def _default_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=60.0, follow_redirects=True)


def _guess_mime(filename: str) -> Optional[str]:
    mime_type, _ = mimetypes.guess_type(filename)
    return mime_type


class FileReferencePipeline:
    """Upload referenced files for one request and credential."""

    def __init__(
        self,
        valves: Valves,
        client: VendorClient,
        *,
        http_client_factory: Optional[HttpClientFactory] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.valves = valves
        self.client = client
        self._http_client_factory = http_client_factory or _default_http_client
        self._sleep = sleep

    @property
    def max_size(self) -> int:
        return self.valves.file_max_size_bytes

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def upload_all(self, urls: Sequence[str]) -> list[dict[str, Any]]:
        """Upload every reference concurrently, preserving order."""
        if not urls:
            return []
        return list(await asyncio.gather(*(self.upload(url) for url in urls)))

    @timed
    async def upload(self, file_ref: str) -> dict[str, Any]:
        """Upload one reference and return its vendor content descriptor."""
        await self.precheck(file_ref)
        loaded = await self.load(file_ref)
        LOGGER.info("Uploading %s (%s, %d bytes)", loaded.filename, loaded.mime_type, len(loaded.data))

        try:
            params = await self.client.acquire_upload_params()
            await self.client.upload_to_object_store(
                params,
                filename=loaded.filename,
                data=loaded.data,
                mime_type=loaded.mime_type,
            )
            if loaded.is_image:
                link = await self.client.image_download_link(loaded.filename, params.dir)
                return {"role": "user", "contentType": "image", "content": link}
            link = await self.client.file_download_link(loaded.filename, params.dir)
        except _VENDOR_FAILURES as exc:
            raise FileReferenceError(
                "upload_failed", f"Upload of {loaded.filename} failed: {exc}", url=self._describe(file_ref)
            ) from exc

        await self.await_scan(link)
        return {
            "role": "user",
            "contentType": "file",
            "content": link,
            "ext": {"fileSize": len(loaded.data)},
        }

    async def await_scan(self, link: str) -> None:
        """Block until the content-safety scan of ``link`` passes."""
        result = await poll(
            link,
            self.client.scan_status,
            classify_scan_status,
            initial_delay=self.valves.SCAN_INITIAL_DELAY_SECONDS,
            interval=self.valves.SCAN_POLL_INTERVAL_SECONDS,
            max_attempts=self.valves.SCAN_MAX_ATTEMPTS,
            sleep=self._sleep,
        )
        if result.status == "failed":
            raise FileReferenceError("scan_failed", f"文件处理失败：{result.reason}", url=link)
        if result.status == "timed_out":
            raise FileReferenceError(
                "scan_timeout",
                f"文件处理超时：{result.attempts} 次检查后仍未完成",
                url=link,
            )

    # ------------------------------------------------------------------
    # Precheck and loading
    # ------------------------------------------------------------------

    @timed
    async def precheck(self, file_ref: str) -> None:
        """HEAD the URL; reject unreachable or oversized files early."""
        if is_base64_data_url(file_ref):
            return
        try:
            async with self._http_client_factory() as http:
                response = await http.head(file_ref, timeout=15.0)
        except httpx.HTTPError as exc:
            raise FileReferenceError("unreachable", f"File {file_ref} is not reachable: {exc}", url=file_ref) from exc
        if response.status_code >= 400:
            raise FileReferenceError(
                "unreachable",
                f"File {file_ref} is not valid: [{response.status_code}] {response.reason_phrase}",
                url=file_ref,
            )
        self._check_declared_size(file_ref, response.headers.get("content-length"))

    async def load(self, file_ref: str) -> LoadedFile:
        if is_base64_data_url(file_ref):
            return self._decode_data_url(file_ref)
        return await self._download(file_ref)

    def _check_declared_size(self, file_ref: str, content_length: Optional[str]) -> None:
        if not content_length:
            return
        try:
            size = int(content_length)
        except ValueError:
            return
        if size > self.max_size:
            raise FileReferenceError(
                "oversize",
                f"File {file_ref} exceeds {self.valves.FILE_MAX_SIZE_MB}MB ({size} bytes)",
                url=file_ref,
            )

    def _decode_data_url(self, file_ref: str) -> LoadedFile:
        match = _DATA_URL_PATTERN.match(file_ref)
        if match is None:
            raise FileReferenceError("unreachable", "Malformed base64 data URL", url="data:")
        mime_type = (match.group("mime") or "application/octet-stream").lower()
        try:
            data = base64.b64decode(file_ref[match.end():], validate=False)
        except (binascii.Error, ValueError) as exc:
            raise FileReferenceError("unreachable", f"Invalid base64 data: {exc}", url="data:") from exc
        if len(data) > self.max_size:
            raise FileReferenceError(
                "oversize",
                f"Inline file exceeds {self.valves.FILE_MAX_SIZE_MB}MB ({len(data)} bytes)",
                url="data:",
            )
        extension = mimetypes.guess_extension(mime_type) or ".bin"
        return LoadedFile(filename=f"{new_uuid()}{extension}", data=data, mime_type=mime_type)

    @timed
    async def _download(self, file_ref: str) -> LoadedFile:
        filename = posixpath.basename(unquote(urlsplit(file_ref).path)) or new_uuid()
        try:
            async with self._http_client_factory() as http:
                async with http.stream("GET", file_ref) as response:
                    if response.status_code >= 400:
                        raise FileReferenceError(
                            "unreachable",
                            f"Download of {file_ref} failed with HTTP {response.status_code}",
                            url=file_ref,
                        )
                    self._check_declared_size(file_ref, response.headers.get("content-length"))
                    header_mime = response.headers.get("content-type", "").split(";")[0].strip().lower()
                    payload = bytearray()
                    async for chunk in response.aiter_bytes():
                        payload.extend(chunk)
                        if len(payload) > self.max_size:
                            raise FileReferenceError(
                                "oversize",
                                f"File {file_ref} exceeds {self.valves.FILE_MAX_SIZE_MB}MB",
                                url=file_ref,
                            )
        except httpx.HTTPError as exc:
            raise FileReferenceError("unreachable", f"Download of {file_ref} failed: {exc}", url=file_ref) from exc
        mime_type = _guess_mime(filename) or header_mime or "application/octet-stream"
        if mime_type == "image/jpg":
            mime_type = "image/jpeg"
        return LoadedFile(filename=filename, data=bytes(payload), mime_type=mime_type)

    @staticmethod
    def _describe(file_ref: str) -> str:
        return "data:" if is_base64_data_url(file_ref) else file_ref
