import os
import uuid
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from fastapi import UploadFile

from nbis_service import TEMPLATE_EXTENSION

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".wsq"}
DEFAULT_MAX_UPLOAD_BYTES = 5 * 1024 * 1024


class UploadRejected(Exception):
    """Raised when an uploaded file cannot be accepted"""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass(frozen=True)
class UploadedFile:
    """A fingerprint image stored under a generated unique name"""
    path: str
    original_name: str
    file_id: str

    @property
    def template_path(self) -> str:
        return str(Path(self.path).with_suffix(TEMPLATE_EXTENSION))


async def ensure_templates_directory(directory: str) -> None:
    try:
        await asyncio.to_thread(os.makedirs, directory, exist_ok=True)
    except OSError as error:
        logger.error(f"Error creating templates directory {directory}: {error}")


async def store_upload(upload: UploadFile, directory: str, max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES) -> UploadedFile:
    """Validate an uploaded WSQ file and write it to directory as <uuid>.wsq"""
    original_name = upload.filename or ""
    extension = os.path.splitext(original_name)[1]
    if extension.lower() not in ALLOWED_EXTENSIONS:
        raise UploadRejected("INVALID_FILE_TYPE", "Only WSQ files are accepted")

    content = await upload.read(max_bytes + 1)
    if len(content) > max_bytes:
        raise UploadRejected(
            "FILE_TOO_LARGE",
            f"File too large. Maximum size: {max_bytes // (1024 * 1024)}MB",
        )

    await ensure_templates_directory(directory)
    file_id = str(uuid.uuid4())
    target = os.path.join(directory, f"{file_id}{extension}")
    await asyncio.to_thread(Path(target).write_bytes, content)

    logger.info(f"Stored upload {original_name} as {target} ({len(content)} bytes)")
    return UploadedFile(path=target, original_name=original_name, file_id=file_id)
