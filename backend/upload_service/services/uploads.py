from __future__ import annotations

import asyncio
import logging
import re
import shutil
import time
from collections.abc import AsyncIterable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os
from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header


logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = frozenset({"image/jpeg", "image/png"})

INVALID_CONTENT_TYPE_MESSAGE = "Missing or invalid Content-Type header"
INVALID_FILE_TYPE_MESSAGE = "Invalid file type. Only JPEG and PNG are allowed."
NO_FILE_MESSAGE = "No file uploaded"

MAX_NAME_ATTEMPTS = 50

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9.-]")
_DOT_RUNS = re.compile(r"\.{2,}")
_PATH_SEPARATORS = re.compile(r"[\\/]")


class UploadStreamError(RuntimeError):
    pass


class UploadAborted(UploadStreamError):
    pass


class IncompleteUploadError(UploadStreamError):
    pass


@dataclass(frozen=True)
class UploadSuccess:
    file_name: str


@dataclass(frozen=True)
class UploadRejected:
    reason: str


@dataclass(frozen=True)
class UploadFailure:
    error: str


UploadResult = UploadSuccess | UploadRejected | UploadFailure


def now_ms() -> int:
    return time.time_ns() // 1_000_000


def sanitize_filename(filename: str) -> str:
    """
    Reduce a client supplied filename to a safe basename.

    Directory components are dropped (both `/` and `\\` count as separators),
    anything outside [A-Za-z0-9.-] becomes `_` and dot runs collapse to one dot.
    """
    base = _PATH_SEPARATORS.split(filename)[-1]
    name = _DOT_RUNS.sub(".", _UNSAFE_CHARS.sub("_", base))
    return name or "file"


def safe_file_name(filename: str, *, timestamp_ms: int) -> str:
    return f"{timestamp_ms}_{sanitize_filename(filename)}"


def _is_multipart(content_type: str | None) -> bool:
    if not content_type:
        return False
    return content_type.strip().lower().startswith("multipart/form-data")


def _multipart_boundary(content_type: str) -> bytes:
    _, params = parse_options_header(content_type)
    boundary = params.get(b"boundary")
    if not boundary:
        raise MultipartParseError("Missing boundary in multipart Content-Type header")
    return boundary


def _part_mime_type(value: bytes | None) -> str:
    # RFC 7578: a part without Content-Type is text/plain.
    mime_type, _ = parse_options_header(value)
    return mime_type.decode("latin-1").strip().lower() or "text/plain"


async def clear_directory(directory: Path) -> int:
    removed = 0
    for entry in await aiofiles.os.listdir(directory):
        path = directory / entry
        if await aiofiles.os.path.isdir(path) and not await aiofiles.os.path.islink(path):
            await asyncio.to_thread(shutil.rmtree, path)
        else:
            await aiofiles.os.remove(path)
        removed += 1
    return removed


_HEADERS = "headers"
_DATA = "data"
_PART_END = "part_end"
_END = "end"


class _MultipartEvents:
    """Buffers parser callbacks so the ingestor can await between them."""

    def __init__(self) -> None:
        self._pending: list[tuple[str, Any]] = []
        self._headers: dict[bytes, bytes] = {}
        self._header_name = b""
        self._header_value = b""

    def callbacks(self) -> dict[str, Callable[..., None]]:
        return {
            "on_part_begin": self.on_part_begin,
            "on_part_data": self.on_part_data,
            "on_part_end": self.on_part_end,
            "on_header_field": self.on_header_field,
            "on_header_value": self.on_header_value,
            "on_header_end": self.on_header_end,
            "on_headers_finished": self.on_headers_finished,
            "on_end": self.on_end,
        }

    def drain(self) -> list[tuple[str, Any]]:
        events, self._pending = self._pending, []
        return events

    def on_part_begin(self) -> None:
        self._headers = {}

    def on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_name += data[start:end]

    def on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value += data[start:end]

    def on_header_end(self) -> None:
        self._headers[self._header_name.strip().lower()] = self._header_value.strip()
        self._header_name = b""
        self._header_value = b""

    def on_headers_finished(self) -> None:
        self._pending.append((_HEADERS, self._headers))

    def on_part_data(self, data: bytes, start: int, end: int) -> None:
        self._pending.append((_DATA, data[start:end]))

    def on_part_end(self) -> None:
        self._pending.append((_PART_END, None))

    def on_end(self) -> None:
        self._pending.append((_END, None))


class _IngestRun:
    """State of one request: the open destination and every file created so far."""

    def __init__(self, ingestor: UploadIngestor) -> None:
        self.ingestor = ingestor
        self.created: list[Path] = []
        self.file_name: str | None = None
        self._sink: Any = None
        self._sink_name: str | None = None

    async def consume(self, content_type: str, body: AsyncIterable[bytes]) -> UploadResult:
        events = _MultipartEvents()
        parser = MultipartParser(_multipart_boundary(content_type), events.callbacks())
        finished = False

        try:
            async for chunk in body:
                parser.write(chunk)
                for kind, payload in events.drain():
                    if kind == _HEADERS:
                        rejection = await self._begin_part(payload)
                        if rejection is not None:
                            return rejection
                    elif kind == _DATA:
                        if self._sink is not None:
                            await self._sink.write(payload)
                    elif kind == _PART_END:
                        await self._end_part()
                    elif kind == _END:
                        finished = True
        finally:
            # A rejection stops reading mid-stream; close the body generator now.
            aclose = getattr(body, "aclose", None)
            if aclose is not None:
                await aclose()

        parser.finalize()
        if not finished:
            raise IncompleteUploadError("Request body ended before the closing multipart boundary")
        if self.file_name is None:
            logger.info("Upload rejected: %s", NO_FILE_MESSAGE)
            return UploadRejected(NO_FILE_MESSAGE)
        return UploadSuccess(self.file_name)

    async def _begin_part(self, headers: dict[bytes, bytes]) -> UploadRejected | None:
        _, disposition = parse_options_header(headers.get(b"content-disposition"))
        raw_filename = disposition.get(b"filename")
        if raw_filename is None:
            logger.debug("Ignoring form field %r", disposition.get(b"name"))
            return None

        filename = raw_filename.decode("utf-8", errors="replace")
        if not filename:
            # Browsers send an empty filename when no file was chosen.
            return None

        mime_type = _part_mime_type(headers.get(b"content-type"))
        if mime_type not in ALLOWED_MIME_TYPES:
            logger.info(
                "Upload rejected: %s",
                INVALID_FILE_TYPE_MESSAGE,
                extra={"client_filename": filename, "mime_type": mime_type},
            )
            return UploadRejected(INVALID_FILE_TYPE_MESSAGE)

        self._sink_name, path, self._sink = await self.ingestor.open_destination(filename)
        self.created.append(path)
        return None

    async def _end_part(self) -> None:
        if self._sink is None:
            return
        await self._sink.close()
        self._sink = None
        self.file_name = self._sink_name
        logger.info("Stored upload %s", self.file_name, extra={"upload_dir": str(self.ingestor.upload_dir)})

    async def discard(self) -> None:
        if self._sink is not None:
            try:
                await self._sink.close()
            except OSError:
                logger.exception("Could not close partial upload %s", self._sink_name)
            self._sink = None
        for path in self.created:
            try:
                await aiofiles.os.remove(path)
            except FileNotFoundError:
                continue
            except OSError:
                logger.exception("Could not remove partial upload %s", path)
        self.created.clear()


class UploadIngestor:
    """
    Turns one multipart request body into exactly one UploadResult.

    Files are streamed chunk by chunk into `upload_dir`; each chunk is written
    before the next one is read. Anything other than UploadSuccess leaves no
    file from this request behind.
    """

    def __init__(
        self,
        upload_dir: Path,
        *,
        clear_before_upload: bool = False,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.upload_dir = Path(upload_dir)
        self.clear_before_upload = clear_before_upload
        self.clock = clock

    async def ingest(self, content_type: str | None, body: AsyncIterable[bytes]) -> UploadResult:
        if not _is_multipart(content_type):
            logger.info("Upload rejected: %s", INVALID_CONTENT_TYPE_MESSAGE, extra={"content_type": content_type})
            return UploadRejected(INVALID_CONTENT_TYPE_MESSAGE)

        run = _IngestRun(self)
        try:
            await self.prepare_directory()
            result = await run.consume(content_type, body)
        except (MultipartParseError, UploadStreamError, OSError) as exc:
            logger.warning("Upload failed: %s", exc, exc_info=True)
            result = UploadFailure(str(exc) or exc.__class__.__name__)
        except BaseException:
            await run.discard()
            raise

        if not isinstance(result, UploadSuccess):
            await run.discard()
        return result

    async def prepare_directory(self) -> None:
        await aiofiles.os.makedirs(self.upload_dir, exist_ok=True)
        if self.clear_before_upload:
            removed = await clear_directory(self.upload_dir)
            logger.warning("Cleared %s entries from %s before upload", removed, self.upload_dir)

    async def open_destination(self, filename: str) -> tuple[str, Path, Any]:
        """Create the destination exclusively; a taken name moves the timestamp forward by 1ms."""
        timestamp = self.clock()
        for _ in range(MAX_NAME_ATTEMPTS):
            name = safe_file_name(filename, timestamp_ms=timestamp)
            path = self.upload_dir / name
            try:
                sink = await aiofiles.open(path, "xb")
            except FileExistsError:
                timestamp += 1
                continue
            return name, path, sink
        raise FileExistsError(f"No free upload name for {filename!r} after {MAX_NAME_ATTEMPTS} attempts")
