"""
附件管理：上传落盘到本地目录，元数据存 Redis 并随 TTL 过期。
"""

from __future__ import annotations

import hashlib
import os
import time
import uuid
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Any, Callable, Protocol

import anyio
from pydantic import BaseModel
from redis.asyncio import Redis

from aiassistant.errors import AssistantError, ErrorCode
from aiassistant.logging_config import logger
from aiassistant.observability.metrics import METRICS, STATUS_ERROR, STATUS_SUCCESS
from aiassistant.redis_client import redis_delete, redis_get_json, redis_set_json
from aiassistant.settings import settings

from .config_loader import FileConfig

DEFAULT_ALLOWED_TYPES = (
    "image/png",
    "image/jpeg",
    "image/gif",
    "image/webp",
    "text/plain",
    "text/csv",
    "application/json",
    "application/pdf",
)

CHUNK_SIZE = 64 * 1024
TMP_SUFFIX = ".tmp"


class AsyncReadable(Protocol):
    async def read(self, size: int = -1) -> bytes: ...


class FileInfo(BaseModel):
    file_id: str
    filename: str
    mime_type: str
    size: int
    sha256: str
    user_id: str
    created_at: int
    expires_at: int


def validate_path(path: str) -> None:
    """拒绝路径穿越、绝对路径和盘符路径。"""
    if ".." in path:
        raise AssistantError(ErrorCode.INVALID_REQUEST, "检测到路径穿越")
    if PurePosixPath(path).is_absolute() or PureWindowsPath(path).is_absolute() or path.startswith("\\"):
        raise AssistantError(ErrorCode.INVALID_REQUEST, "不允许使用绝对路径")
    if len(path) >= 2 and path[1] == ":":
        raise AssistantError(ErrorCode.INVALID_REQUEST, "不允许使用盘符路径")


class FileManager:
    def __init__(
        self,
        redis: Redis,
        config: FileConfig | None = None,
        *,
        prefix: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self._prefix = settings.ai_assistant_redis_prefix if prefix is None else prefix
        self._clock = clock
        self.config = config or FileConfig()

    def update_config(self, config: FileConfig) -> None:
        self.config = config

    @property
    def storage_path(self) -> Path:
        return Path(self.config.storage_path)

    @property
    def allowed_types(self) -> tuple[str, ...]:
        return tuple(self.config.allowed_types) or DEFAULT_ALLOWED_TYPES

    def info_key(self, file_id: str) -> str:
        return f"{self._prefix}file:{file_id}"

    def is_allowed_type(self, mime_type: str) -> bool:
        base = (mime_type or "").split(";", 1)[0].strip().lower()
        return base in self.allowed_types

    def _path_for(self, file_id: str) -> Path:
        validate_path(file_id)
        if "/" in file_id or "\\" in file_id:
            raise AssistantError(ErrorCode.INVALID_REQUEST, "非法的文件 ID")
        return self.storage_path / file_id

    async def upload(
        self,
        *,
        user_id: str,
        filename: str,
        mime_type: str,
        source: AsyncReadable,
    ) -> FileInfo:
        try:
            info = await self._store(user_id=user_id, filename=filename, mime_type=mime_type, source=source)
        except Exception:
            METRICS.record_file_upload(mime_type, STATUS_ERROR)
            raise
        METRICS.record_file_upload(mime_type, STATUS_SUCCESS, info.size)
        return info

    async def _store(
        self,
        *,
        user_id: str,
        filename: str,
        mime_type: str,
        source: AsyncReadable,
    ) -> FileInfo:
        if not self.is_allowed_type(mime_type):
            raise AssistantError(ErrorCode.INVALID_FILE_TYPE, f"不支持的文件类型: {mime_type}")

        await anyio.Path(self.storage_path).mkdir(parents=True, exist_ok=True)
        file_id = f"file_{uuid.uuid4()}"
        final_path = self._path_for(file_id)
        tmp_path = final_path.with_name(file_id + TMP_SUFFIX)

        digest = hashlib.sha256()
        size = 0
        max_size = self.config.max_size
        try:
            async with await anyio.open_file(tmp_path, "wb") as out:
                while True:
                    chunk = await source.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    size += len(chunk)
                    if size > max_size:
                        raise AssistantError(
                            ErrorCode.FILE_TOO_LARGE,
                            f"文件大小超过限制: {max_size} 字节",
                            details={"max_size": max_size},
                        )
                    digest.update(chunk)
                    await out.write(chunk)
            await anyio.Path(tmp_path).rename(final_path)
        finally:
            await anyio.Path(tmp_path).unlink(missing_ok=True)

        now = int(self._clock())
        info = FileInfo(
            file_id=file_id,
            filename=os.path.basename(filename or "") or file_id,
            mime_type=mime_type,
            size=size,
            sha256=digest.hexdigest(),
            user_id=str(user_id),
            created_at=now,
            expires_at=now + self.config.ttl,
        )
        try:
            await redis_set_json(self._redis, self.info_key(file_id), info.model_dump(), ttl_seconds=self.config.ttl)
        except Exception:
            await anyio.Path(final_path).unlink(missing_ok=True)
            raise
        logger.info("file uploaded: %s (%s, %d bytes) by user %s", file_id, mime_type, size, user_id)
        return info

    async def get_info(self, file_id: str) -> FileInfo:
        data: Any = await redis_get_json(self._redis, self.info_key(file_id))
        if data is None:
            raise AssistantError(ErrorCode.FILE_NOT_FOUND, "文件不存在或已过期")
        return FileInfo.model_validate(data)

    async def get_path(self, file_id: str) -> Path:
        path = self._path_for(file_id)
        await self.get_info(file_id)
        if not await anyio.Path(path).exists():
            raise AssistantError(ErrorCode.FILE_NOT_FOUND, "文件不存在")
        return path

    async def delete(self, file_id: str) -> None:
        path = self._path_for(file_id)
        await anyio.Path(path).unlink(missing_ok=True)
        await redis_delete(self._redis, self.info_key(file_id))

    async def cleanup_expired(self) -> int:
        """删除残留的临时文件以及元数据已过期的文件。"""
        root = anyio.Path(self.storage_path)
        if not await root.exists():
            return 0

        now = int(self._clock())
        cleaned = 0
        async for entry in root.iterdir():
            if not await entry.is_file():
                continue
            name = entry.name
            if name.endswith(TMP_SUFFIX):
                await entry.unlink(missing_ok=True)
                cleaned += 1
                continue
            data = await redis_get_json(self._redis, self.info_key(name))
            if data is None or now > int(data.get("expires_at", 0)):
                await entry.unlink(missing_ok=True)
                await redis_delete(self._redis, self.info_key(name))
                cleaned += 1
        if cleaned:
            logger.info("cleaned up %d expired files", cleaned)
        return cleaned


__all__ = ["DEFAULT_ALLOWED_TYPES", "FileInfo", "FileManager", "validate_path"]
