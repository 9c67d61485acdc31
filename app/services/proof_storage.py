"""
File storage for uploaded proof-of-payment images.

Files are named `<epoch_ms>_<tx_id>.<ext>` inside the upload directory. Serving
a file requires the name to embed a transaction id; the route then checks the
Proof row before returning any bytes.
"""

import asyncio
import logging
import re
import time
from pathlib import Path
from typing import List, Optional, Tuple

from app.core.exceptions import NotFoundError, PayoutValidationError

logger = logging.getLogger(__name__)

TX_ID_PATTERN = re.compile(r"TX_[a-f0-9-]+")

CONTENT_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
}

EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}


def content_type_for(filename: str) -> str:
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    return CONTENT_TYPES.get(ext, "application/octet-stream")


def extract_tx_id(filename: str) -> Optional[str]:
    match = TX_ID_PATTERN.search(filename)
    return match.group(0) if match else None


class ProofStorage:
    def __init__(self, upload_dir: str, max_size: int, allowed_types: List[str]):
        self.upload_dir = Path(upload_dir)
        self.max_size = max_size
        self.allowed_types = set(allowed_types)

    def ensure_dir(self) -> None:
        self.upload_dir.mkdir(parents=True, exist_ok=True)

    def validate_upload(self, content_type: Optional[str], size: Optional[int]) -> None:
        if content_type and content_type not in self.allowed_types:
            raise PayoutValidationError(
                "Unsupported proof file type", field="content_type", value=content_type
            )
        if size is not None and size > self.max_size:
            raise PayoutValidationError(
                "Proof file is too large", field="size", value=size
            )

    @staticmethod
    def build_filename(tx_id: str, ext: str, now_ms: Optional[int] = None) -> str:
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        ext = (ext or "jpg").lower().lstrip(".")
        return f"{now_ms}_{tx_id}.{ext}"

    async def save(self, tx_id: str, data: bytes, ext: str) -> str:
        self.validate_upload(None, len(data))
        filename = self.build_filename(tx_id, ext)
        self.ensure_dir()
        await asyncio.to_thread((self.upload_dir / filename).write_bytes, data)
        logger.info(f"Stored proof {filename} ({len(data)} bytes)")
        return filename

    async def discard(self, filename: str) -> None:
        """Remove a stored file that never got its Proof row."""
        path = self.upload_dir / filename
        await asyncio.to_thread(path.unlink, missing_ok=True)
        logger.info(f"Discarded orphaned proof {filename}")

    def resolve(self, filename: str) -> Tuple[Path, str]:
        """
        Map a requested filename to its path and embedded transaction id.

        Raises:
            PayoutValidationError: If the name is not a plain proof filename
            NotFoundError: If no such file exists
        """
        if "/" in filename or "\\" in filename or filename.startswith("."):
            raise PayoutValidationError("Invalid filename format", field="filename")

        tx_id = extract_tx_id(filename)
        if not tx_id:
            raise PayoutValidationError("Invalid filename format", field="filename")

        path = self.upload_dir / filename
        if not path.is_file():
            raise NotFoundError("Screenshot", filename)

        return path, tx_id

    async def read(self, path: Path) -> bytes:
        return await asyncio.to_thread(path.read_bytes)
