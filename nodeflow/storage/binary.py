"""
Binary data providers.

Items never carry raw bytes. A node stores a payload through the provider
and puts the returned BinaryRef on an item; downstream nodes fetch it back
through their context.
"""

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Protocol, runtime_checkable

from nodeflow.errors import InputError
from nodeflow.schemas.item import BinaryRef

logger = logging.getLogger(__name__)


@runtime_checkable
class BinaryDataProvider(Protocol):
    async def store(
        self,
        data: bytes,
        mime_type: str = "application/octet-stream",
        file_name: str | None = None,
    ) -> BinaryRef: ...

    async def fetch(self, ref: BinaryRef) -> bytes: ...


class InMemoryBinaryProvider:
    """Keeps payloads in a dict. For tests and single-process runs."""

    def __init__(self):
        self._blobs: dict[str, bytes] = {}

    async def store(
        self,
        data: bytes,
        mime_type: str = "application/octet-stream",
        file_name: str | None = None,
    ) -> BinaryRef:
        ref = BinaryRef(
            id=f"bin_{uuid.uuid4().hex}",
            mime_type=mime_type,
            file_name=file_name,
            size=len(data),
        )
        self._blobs[ref.id] = bytes(data)
        return ref

    async def fetch(self, ref: BinaryRef) -> bytes:
        try:
            return self._blobs[ref.id]
        except KeyError as e:
            raise InputError(f"Binary data '{ref.id}' not found") from e


class FilesystemBinaryProvider:
    """
    Stores each payload as a file under ``base_path``.

    Payloads survive the process, so items holding BinaryRefs stay valid in
    suspension tokens resumed elsewhere.
    """

    def __init__(self, base_path: Path | str):
        self.base_path = Path(base_path)

    def _path(self, blob_id: str) -> Path:
        if not blob_id or "/" in blob_id or "\\" in blob_id or blob_id.startswith("."):
            raise InputError(f"Invalid binary id: {blob_id!r}")
        return self.base_path / blob_id

    async def store(
        self,
        data: bytes,
        mime_type: str = "application/octet-stream",
        file_name: str | None = None,
    ) -> BinaryRef:
        ref = BinaryRef(
            id=f"bin_{uuid.uuid4().hex}",
            mime_type=mime_type,
            file_name=file_name,
            size=len(data),
        )
        path = self._path(ref.id)

        def _write():
            self.base_path.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.debug(f"Stored binary {ref.id} ({ref.size} bytes)")
        return ref

    async def fetch(self, ref: BinaryRef) -> bytes:
        path = self._path(ref.id)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise InputError(f"Binary data '{ref.id}' not found") from e
