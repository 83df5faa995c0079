"""
模型数据存储模块

以字符串键保存和读取自定义模型的二进制数据。
"""

import hashlib
import logging
import os
import re
import threading
from pathlib import Path
from typing import Dict

from models.interfaces import IModelBlobStore
from models.exceptions import NotFoundError, PersistenceError


class InMemoryModelBlobStore(IModelBlobStore):
    """内存模型存储，进程退出后数据丢失"""

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def save(self, key: str, blob: bytes) -> None:
        if not key:
            raise PersistenceError(key, "存储键不能为空")
        with self._lock:
            self._blobs[key] = bytes(blob)

    def load(self, key: str) -> bytes:
        with self._lock:
            if key not in self._blobs:
                raise NotFoundError(key)
            return self._blobs[key]

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._blobs


class FileModelBlobStore(IModelBlobStore):
    """文件模型存储

    每个键对应目录下的一个文件。写入先写临时文件再重命名，
    保存中途失败不会破坏已有的模型文件。
    """

    SUFFIX = ".model"

    def __init__(self, directory: str = "model_store"):
        """初始化文件存储

        Args:
            directory: 存储目录
        """
        self.directory = Path(directory)
        self.logger = logging.getLogger(__name__)

    def _path_for(self, key: str) -> Path:
        """将键转换为安全的文件名"""
        if not key:
            raise PersistenceError(key, "存储键不能为空")
        safe = re.sub(r'[^A-Za-z0-9._-]', '_', key)
        if safe != key:
            # 替换过字符的键附加摘要，避免不同键映射到同一文件
            safe += "-" + hashlib.sha1(key.encode('utf-8')).hexdigest()[:8]
        return self.directory / (safe + self.SUFFIX)

    def save(self, key: str, blob: bytes) -> None:
        path = self._path_for(key)
        temp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            with open(temp_path, 'wb') as f:
                f.write(blob)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise PersistenceError(key, str(e)) from e

        self.logger.info(f"模型已保存: {key} -> {path} ({len(blob) / 1024:.1f} KB)")

    def load(self, key: str) -> bytes:
        path = self._path_for(key)
        if not path.is_file():
            raise NotFoundError(key)
        try:
            with open(path, 'rb') as f:
                return f.read()
        except OSError as e:
            raise PersistenceError(key, str(e)) from e

    def exists(self, key: str) -> bool:
        return self._path_for(key).is_file()
