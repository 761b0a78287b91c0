"""
映射记录存储

文本文件，每行一条记录，是映射状态的唯一持久化来源。

并发：所有写操作都在 transaction() 中执行，transaction 同时持有进程内可重入锁
和 <store>.lock 上的建议性文件锁，避免多个 pfcli 进程（例如定时 restore 与手动
add）交错读写导致记录丢失。调用方需要把"读-判断-写"整体包在同一个 transaction
中；append 本身不做去重，去重由调用方在事务内完成。
"""

import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

from pfcli.errors import StoreLockError
from pfcli.mapping import Mapping

logger = logging.getLogger(__name__)


class MappingRecords:
    """可重复迭代的记录视图，每次迭代都重新读取文件"""

    def __init__(self, store: "MappingStore"):
        self._store = store

    def __iter__(self) -> Iterator[Mapping]:
        return self._store._iter_records()


class MappingStore:
    def __init__(self, path, lock_timeout: float = 10.0):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.lock_timeout = lock_timeout
        self._mutex = threading.RLock()
        self._depth = 0
        self._lock_handle = None

    def ensure_exists(self):
        """创建映射文件（如果不存在）"""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)

    # =========================================================================
    # 锁
    # =========================================================================

    @contextmanager
    def transaction(self):
        """
        获取存储写锁（可重入）

        Raises:
            StoreLockError: lock_timeout 内未能获得文件锁
        """
        with self._mutex:
            if self._depth == 0:
                self._lock_handle = self._acquire_file_lock()
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
                if self._depth == 0:
                    handle = self._lock_handle
                    self._lock_handle = None
                    # 关闭文件描述符即释放 flock
                    handle.close()

    def _acquire_file_lock(self):
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.lock_path, "a+b")
        deadline = time.monotonic() + self.lock_timeout

        while True:
            try:
                _try_lock(handle)
                return handle
            except OSError:
                if time.monotonic() >= deadline:
                    handle.close()
                    raise StoreLockError(
                        f"Timed out waiting for mapping file lock: {self.lock_path}"
                    )
                time.sleep(0.05)

    # =========================================================================
    # 读取
    # =========================================================================

    def all(self) -> MappingRecords:
        """所有记录，按文件顺序（即插入顺序）"""
        return MappingRecords(self)

    def _iter_records(self) -> Iterator[Mapping]:
        try:
            f = open(self.path, "r", encoding="utf-8")
        except FileNotFoundError:
            return

        with f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    yield Mapping.from_line(line)
                except ValueError as e:
                    logger.warning(f"Skipping malformed record at {self.path}:{lineno}: {e}")

    def find_by_local(self, local: str) -> Optional[Mapping]:
        for mapping in self.all():
            if mapping.local == local:
                return mapping
        return None

    # =========================================================================
    # 写入
    # =========================================================================

    def append(self, mapping: Mapping):
        """
        追加一条记录

        前置条件：调用方已在同一事务中确认不存在相同 local 的记录。
        """
        with self.transaction():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            prefix = "" if self._ends_with_newline() else "\n"
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(prefix + mapping.to_line())
                f.flush()
                os.fsync(f.fileno())

    def delete_by_local(self, local: str):
        """删除所有 local 匹配的记录；没有匹配时不改动文件"""
        with self.transaction():
            records = list(self.all())
            kept = [m for m in records if m.local != local]
            if len(kept) == len(records):
                return
            self.replace_all(kept)

    def replace_all(self, mappings: Iterable[Mapping]):
        """
        整体替换记录集

        先写临时文件再 rename，读者不会看到写了一半的文件。
        """
        with self.transaction():
            records: List[Mapping] = list(mappings)
            self.path.parent.mkdir(parents=True, exist_ok=True)

            fd, tmp_name = tempfile.mkstemp(
                prefix=self.path.name + ".", suffix=".tmp", dir=str(self.path.parent)
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    for mapping in records:
                        f.write(mapping.to_line())
                    f.flush()
                    os.fsync(f.fileno())
                if self.path.exists():
                    os.chmod(tmp_name, self.path.stat().st_mode & 0o777)
                os.replace(tmp_name, self.path)
            except BaseException:
                try:
                    os.unlink(tmp_name)
                except FileNotFoundError:
                    pass
                raise

    def _ends_with_newline(self) -> bool:
        try:
            with open(self.path, "rb") as f:
                f.seek(0, os.SEEK_END)
                if f.tell() == 0:
                    return True
                f.seek(-1, os.SEEK_END)
                return f.read(1) == b"\n"
        except FileNotFoundError:
            return True


def _try_lock(handle):
    """非阻塞独占锁，失败抛出 OSError"""
    if os.name == "nt":
        import msvcrt  # type: ignore

        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
    else:
        import fcntl  # type: ignore

        fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
