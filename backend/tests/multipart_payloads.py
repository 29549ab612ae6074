from __future__ import annotations

from collections.abc import AsyncIterator


BOUNDARY = "----upload-test-boundary"
MULTIPART_CONTENT_TYPE = f"multipart/form-data; boundary={BOUNDARY}"


def file_part(*, filename: str, content_type: str | None, data: bytes, name: str = "file") -> bytes:
    head = f'--{BOUNDARY}\r\nContent-Disposition: form-data; name="{name}"; filename="{filename}"\r\n'
    if content_type is not None:
        head += f"Content-Type: {content_type}\r\n"
    return head.encode("utf-8") + b"\r\n" + data + b"\r\n"


def field_part(*, name: str, value: str) -> bytes:
    return f'--{BOUNDARY}\r\nContent-Disposition: form-data; name="{name}"\r\n\r\n{value}\r\n'.encode("utf-8")


def multipart_body(*parts: bytes) -> bytes:
    return b"".join(parts) + f"--{BOUNDARY}--\r\n".encode("utf-8")


async def chunked(data: bytes, size: int = 7) -> AsyncIterator[bytes]:
    # Small chunks split boundaries and headers across parser writes.
    for start in range(0, len(data), size):
        yield data[start : start + size]
