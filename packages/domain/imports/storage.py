"""
File storage for uploads

Uploads are stored once per content hash under UPLOAD_STORAGE_PATH/<user>/.
Batches may only reference files inside the caller's own upload directory.
Workers read files back from local paths, file:// URLs, or http(s) URLs.
"""
import asyncio
import re
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import unquote, urlparse

import httpx
import structlog

from packages.common.config import get_settings
from packages.common.errors import AuthorizationError, ExtractionError, ValidationError
from packages.domain.imports.duplicate_detector import compute_content_hash
from packages.domain.imports.schemas import detect_file_format

logger = structlog.get_logger()

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def _safe_segment(value: str) -> str:
    return _UNSAFE_CHARS.sub("_", value)[:128] or "unknown"


def user_upload_dir(user_id: str, storage_root: Optional[str] = None) -> Path:
    root = Path(storage_root or get_settings().upload_storage_path)
    return (root / _safe_segment(user_id)).resolve()


def assert_owned_upload(user_id: str, file_url: str, storage_root: Optional[str] = None) -> Path:
    """
    Resolve a batch file reference and check it was uploaded by the user.

    Only file:// URLs inside UPLOAD_STORAGE_PATH/<user>/ are accepted;
    anything else (remote URLs, other users' uploads, arbitrary paths) is refused.

    Raises:
        AuthorizationError: The file is not one of the user's uploads
    """
    parsed = urlparse(file_url)
    if parsed.scheme != "file" or parsed.netloc not in ("", "localhost"):
        raise AuthorizationError("Files must be uploaded before they can be imported")

    path = Path(unquote(parsed.path)).resolve()
    if not path.is_relative_to(user_upload_dir(user_id, storage_root)):
        logger.warning("foreign_file_reference_rejected", user_id=user_id, file_url=file_url)
        raise AuthorizationError("File does not belong to your uploads")
    return path


def _write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


async def store_upload(
    user_id: str,
    file_name: str,
    data: bytes,
    storage_root: Optional[str] = None,
) -> Tuple[str, str]:
    """
    Persist uploaded bytes.

    Args:
        user_id: Owner (used as a directory)
        file_name: Original file name (used for the extension)
        data: File content
        storage_root: Override for UPLOAD_STORAGE_PATH

    Returns:
        (file_url, content_hash)

    Raises:
        ValidationError: Empty or oversized file
    """
    settings = get_settings()
    if not data:
        raise ValidationError("Uploaded file is empty")
    if len(data) > settings.max_upload_size_bytes:
        raise ValidationError(
            f"File exceeds the {settings.max_upload_size_bytes // (1024 * 1024)} MB upload limit"
        )

    content_hash = compute_content_hash(data)
    extension = detect_file_format(file_name).value
    path = user_upload_dir(user_id, storage_root) / content_hash[:2] / f"{content_hash}.{extension}"

    await asyncio.to_thread(_write_bytes, path, data)

    logger.info("upload_stored",
                user_id=user_id,
                path=str(path),
                size_bytes=len(data),
                content_hash=content_hash[:16])
    return path.as_uri(), content_hash


async def fetch_file_bytes(file_url: str, timeout: Optional[float] = None) -> bytes:
    """
    Read a file referenced by a batch item.

    Raises:
        ExtractionError: File missing or download failed
    """
    timeout = timeout or get_settings().file_fetch_timeout_seconds
    parsed = urlparse(file_url)

    if parsed.scheme in ("http", "https"):
        try:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
                response = await client.get(file_url)
                response.raise_for_status()
                return response.content
        except httpx.HTTPError as e:
            raise ExtractionError(f"Could not download file: {e}")

    if parsed.scheme == "file":
        path = Path(unquote(parsed.path))
    elif parsed.scheme == "":
        path = Path(file_url)
    else:
        raise ExtractionError(f"Unsupported file location scheme: {parsed.scheme}")

    try:
        return await asyncio.to_thread(path.read_bytes)
    except OSError as e:
        raise ExtractionError(f"Could not read file {path.name}: {e.strerror or e}")
