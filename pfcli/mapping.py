"""
映射记录与进程句柄

持久化格式（每行一条，空格分隔）：
    <local> <remote> <handle>

handle 为 "<pid>" 或 "<pid>@<进程启动时间>"；带启动时间的句柄可以识别 PID 复用。
"""

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class ProcessHandle:
    pid: int
    started_at: Optional[float] = None
    # 从文件读取的原始文本，写回时保持不变
    raw: Optional[str] = field(default=None, compare=False, repr=False)

    def __str__(self) -> str:
        if self.raw is not None:
            return self.raw
        if self.started_at is None:
            return str(self.pid)
        return f"{self.pid}@{self.started_at:.2f}"

    @classmethod
    def parse(cls, text: str) -> "ProcessHandle":
        pid_text, sep, started_text = text.partition("@")
        pid = int(pid_text)
        if pid <= 0:
            raise ValueError(f"invalid pid: {pid_text}")
        started_at = float(started_text) if sep else None
        return cls(pid=pid, started_at=started_at, raw=text)


@dataclass(frozen=True)
class Mapping:
    local: str
    remote: str
    handle: ProcessHandle

    def to_line(self) -> str:
        return f"{self.local} {self.remote} {self.handle}\n"

    @classmethod
    def from_line(cls, line: str) -> "Mapping":
        fields = line.split()
        if len(fields) != 3:
            raise ValueError(f"expected 3 fields, got {len(fields)}")
        local, remote, handle = fields
        return cls(local=local, remote=remote, handle=ProcessHandle.parse(handle))
