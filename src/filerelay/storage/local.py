"""Local filesystem object store backend."""

import asyncio
import json
import logging
import shutil
import uuid
from pathlib import Path
from typing import Mapping

from filerelay.pipeline.exceptions import StorageError
from filerelay.storage.base import ObjectStore, UploadedPart

logger = logging.getLogger(__name__)

STAGING_DIR = ".multipart"
METADATA_SUFFIX = ".meta.json"


class LocalObjectStore(ObjectStore):
    """Filesystem-backed object store for development.

    Multipart parts are staged under ``<base>/.multipart/<upload_id>/`` and
    only become visible at ``<base>/<key>`` when the upload is completed,
    via an atomic rename.
    """

    def __init__(self, base_path: str | Path = "data/uploads"):
        self.base_path = Path(base_path)

    def _object_path(self, key: str) -> Path:
        base = self.base_path.resolve()
        target = (base / key.lstrip("/")).resolve()
        if base not in target.parents:
            raise StorageError(f"Object key escapes storage root: {key}")
        if STAGING_DIR in target.relative_to(base).parts:
            raise StorageError(f"Object key uses reserved prefix: {key}")
        return target

    def _staging_path(self, upload_id: str) -> Path:
        if not upload_id or "/" in upload_id or "\\" in upload_id or upload_id.startswith("."):
            raise StorageError(f"Invalid upload id: {upload_id}")
        return self.base_path.resolve() / STAGING_DIR / upload_id

    @staticmethod
    def _write_metadata(path: Path, content_type: str, metadata: Mapping[str, str]) -> None:
        path.write_text(
            json.dumps({"content_type": content_type, "metadata": dict(metadata)}),
            encoding="utf-8",
        )

    def _put_object_sync(
        self, key: str, data: bytes, content_type: str, metadata: Mapping[str, str]
    ) -> None:
        target = self._object_path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")
        tmp.write_bytes(data)
        self._write_metadata(Path(f"{target}{METADATA_SUFFIX}"), content_type, metadata)
        tmp.replace(target)

    def _create_sync(self, key: str, content_type: str, metadata: Mapping[str, str]) -> str:
        self._object_path(key)
        upload_id = uuid.uuid4().hex
        staging = self._staging_path(upload_id)
        staging.mkdir(parents=True)
        self._write_metadata(staging / "upload.json", content_type, metadata)
        return upload_id

    def _upload_part_sync(self, upload_id: str, part_number: int, data: bytes) -> str:
        staging = self._staging_path(upload_id)
        if not staging.is_dir():
            raise StorageError(f"No such upload: {upload_id}")
        (staging / f"part-{part_number:05d}").write_bytes(data)
        return f"{upload_id}-{part_number}"

    def _complete_sync(self, key: str, upload_id: str, parts: list[UploadedPart]) -> None:
        staging = self._staging_path(upload_id)
        if not staging.is_dir():
            raise StorageError(f"No such upload: {upload_id}")
        target = self._object_path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = staging / "assembled"

        with open(tmp, "wb") as out:
            for part in sorted(parts, key=lambda p: p.part_number):
                part_path = staging / f"part-{part.part_number:05d}"
                if not part_path.is_file():
                    raise StorageError(f"Missing part {part.part_number} for upload {upload_id}")
                with open(part_path, "rb") as src:
                    shutil.copyfileobj(src, out, 1024 * 1024)

        (staging / "upload.json").replace(Path(f"{target}{METADATA_SUFFIX}"))
        tmp.replace(target)
        shutil.rmtree(staging, ignore_errors=True)

    def _abort_sync(self, upload_id: str) -> None:
        shutil.rmtree(self._staging_path(upload_id), ignore_errors=True)

    async def _run(self, operation: str, key: str, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except OSError as e:
            logger.error(
                f"Local {operation} failed for {key}: {e}",
                extra={"object_key": key, "operation": operation, "error": str(e)},
            )
            raise StorageError(f"Local {operation} failed: {e}") from e

    async def put_object(
        self, key: str, data: bytes, content_type: str, metadata: Mapping[str, str]
    ) -> None:
        await self._run("put_object", key, self._put_object_sync, key, data, content_type, metadata)

    async def create_multipart_upload(
        self, key: str, content_type: str, metadata: Mapping[str, str]
    ) -> str:
        return await self._run("create_multipart_upload", key, self._create_sync, key, content_type, metadata)

    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        return await self._run("upload_part", key, self._upload_part_sync, upload_id, part_number, data)

    async def complete_multipart_upload(
        self, key: str, upload_id: str, parts: list[UploadedPart]
    ) -> None:
        await self._run("complete_multipart_upload", key, self._complete_sync, key, upload_id, parts)

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        await self._run("abort_multipart_upload", key, self._abort_sync, upload_id)

    def public_url(self, key: str) -> str:
        return (self.base_path.resolve() / key.lstrip("/")).as_uri()

    def get_backend_name(self) -> str:
        return "local"
