"""Persistence gateways for request status records.

The pipeline reports every status change through ``PersistenceGateway``.
Writes are fire-and-forget from the pipeline's point of view: a gateway may
fail with PersistenceError, and the pipeline logs and ignores it.

Two gateways are provided:
- InMemoryPersistenceGateway: records every write, for tests and embedding
- FileSystemPersistenceGateway: one directory per request under a base
  output directory, written atomically
"""

import asyncio
import contextlib
import json
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

from lessonforge.schemas.assets import AssetResult
from lessonforge.schemas.lesson import LessonDocument
from lessonforge.schemas.session import RequestStatus


MEDIA_TYPE_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "image/svg+xml": "svg",
}


class PersistenceError(Exception):
    """Raised by a gateway when a write cannot be completed."""

    def __init__(self, message: str, request_id: Optional[str] = None):
        self.request_id = request_id
        super().__init__(message)


class StatusUpdate(BaseModel):
    """Fields reported with one status change."""

    status: RequestStatus
    document: Optional[LessonDocument] = None
    diagnostics: List[str] = Field(default_factory=list)
    assets: List[AssetResult] = Field(default_factory=list)
    failure_reason: Optional[str] = None


class PersistenceGateway(ABC):
    """Boundary toward the store that owns request records."""

    @abstractmethod
    async def record_status(self, request_id: str, fields: StatusUpdate) -> None:
        """Persist one status change.

        Raises:
            PersistenceError: If the write fails
        """
        pass


class InMemoryPersistenceGateway(PersistenceGateway):
    """Gateway that keeps every write in memory.

    Args:
        fail_with: Optional exception raised by every write, to exercise the
            pipeline's handling of a broken store
    """

    def __init__(self, fail_with: Optional[Exception] = None):
        self.fail_with = fail_with
        self.writes: List[Tuple[str, StatusUpdate]] = []

    async def record_status(self, request_id: str, fields: StatusUpdate) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.writes.append((request_id, fields))

    def history(self, request_id: str) -> List[RequestStatus]:
        return [fields.status for rid, fields in self.writes if rid == request_id]

    def latest(self, request_id: str) -> Optional[StatusUpdate]:
        for rid, fields in reversed(self.writes):
            if rid == request_id:
                return fields
        return None


class FileSystemPersistenceGateway(PersistenceGateway):
    """Gateway writing one directory per request.

    Layout under ``base_output_dir/<request_id>/``:
    - status.json: latest status, diagnostics and asset index
    - lesson.json: compiled document, once one exists
    - block_<index>.<ext>: generated asset bytes

    Every file is written through a temp file and ``os.replace`` so readers
    never see a partial write.
    """

    def __init__(self, base_output_dir: str = "output"):
        self.base_output_dir = base_output_dir

    async def record_status(self, request_id: str, fields: StatusUpdate) -> None:
        await asyncio.to_thread(self._record_status_sync, request_id, fields)

    def request_directory(self, request_id: str) -> Path:
        """Directory for ``request_id``; rejects ids that would escape the base."""
        if (
            not request_id
            or request_id in (".", "..")
            or "/" in request_id
            or "\\" in request_id
            or "\0" in request_id
        ):
            raise PersistenceError(f"Invalid request id for a directory name: {request_id!r}", request_id)
        return Path(self.base_output_dir) / request_id

    def _record_status_sync(self, request_id: str, fields: StatusUpdate) -> None:
        request_dir = self.request_directory(request_id)
        try:
            request_dir.mkdir(parents=True, exist_ok=True)

            asset_index: List[Dict[str, Union[int, str]]] = []
            for asset in sorted(fields.assets, key=lambda a: a.block_index):
                extension = MEDIA_TYPE_EXTENSIONS.get(asset.media_type, "bin")
                file_name = f"block_{asset.block_index}.{extension}"
                self._write_file_atomically(request_dir / file_name, asset.data)
                asset_index.append({
                    "block_index": asset.block_index,
                    "media_type": asset.media_type,
                    "file": file_name,
                })

            if fields.document is not None:
                self._write_file_atomically(
                    request_dir / "lesson.json",
                    fields.document.model_dump_json(indent=2, exclude_none=True)
                )

            record = {
                "request_id": request_id,
                "status": fields.status.value,
                "updated_at": datetime.now(timezone.utc).isoformat(),
                "diagnostics": fields.diagnostics,
                "failure_reason": fields.failure_reason,
                "assets": asset_index,
            }
            self._write_file_atomically(request_dir / "status.json", json.dumps(record, indent=2))
        except OSError as e:
            raise PersistenceError(f"Failed to write status for {request_id}: {e}", request_id) from e

    def _write_file_atomically(self, file_path: Path, content: Union[str, bytes]) -> None:
        """Write ``content`` to a temp file in the same directory, then rename."""
        temp_file_path = None
        binary = isinstance(content, bytes)

        try:
            with tempfile.NamedTemporaryFile(
                mode='wb' if binary else 'w',
                dir=file_path.parent,
                delete=False,
                encoding=None if binary else 'utf-8',
                suffix='.tmp'
            ) as temp_file:
                temp_file_path = temp_file.name
                temp_file.write(content)
                temp_file.flush()
                os.fsync(temp_file.fileno())

            os.replace(temp_file_path, file_path)

        except OSError:
            if temp_file_path and os.path.exists(temp_file_path):
                with contextlib.suppress(OSError):
                    os.unlink(temp_file_path)
            raise
