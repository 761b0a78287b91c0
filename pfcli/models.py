"""
数据模型定义

使用 Pydantic 定义控制接口的请求/响应数据结构
"""

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from pfcli.manager import RESTORE_RUNNING, MappingStatus, RestoreOutcome
from pfcli.mapping import Mapping


class MappingCreateRequest(BaseModel):
    """新增映射请求"""
    local: str = Field(..., description="本地地址 IP:端口")
    remote: str = Field(..., description="远端地址 IP/域名:端口")


class MappingInfo(BaseModel):
    """映射信息"""
    local: str = Field(..., description="本地地址")
    remote: str = Field(..., description="远端地址")
    pid: int = Field(..., description="转发进程 PID")
    handle: str = Field(..., description="持久化的进程句柄")
    alive: Optional[bool] = Field(None, description="进程是否存活")

    @classmethod
    def from_mapping(cls, mapping: Mapping, alive: Optional[bool] = None) -> "MappingInfo":
        return cls(
            local=mapping.local,
            remote=mapping.remote,
            pid=mapping.handle.pid,
            handle=str(mapping.handle),
            alive=alive,
        )

    @classmethod
    def from_status(cls, status: MappingStatus) -> "MappingInfo":
        return cls.from_mapping(status.mapping, alive=status.alive)


class RemoveResponse(BaseModel):
    """删除映射响应"""
    mapping: MappingInfo
    terminated: bool = Field(..., description="终止信号是否发送成功")


class RestoreItem(BaseModel):
    """单条恢复结果"""
    local: str
    remote: str
    action: Literal["running", "restarted", "dropped"]
    handle: Optional[str] = Field(None, description="恢复后存储中的句柄，dropped 时为空")
    error: Optional[str] = None

    @classmethod
    def from_outcome(cls, outcome: RestoreOutcome) -> "RestoreItem":
        if outcome.action == RESTORE_RUNNING:
            handle = outcome.mapping.handle
        else:
            handle = outcome.new_handle
        return cls(
            local=outcome.mapping.local,
            remote=outcome.mapping.remote,
            action=outcome.action,
            handle=str(handle) if handle is not None else None,
            error=outcome.error,
        )


class RestoreResponse(BaseModel):
    """恢复响应"""
    items: List[RestoreItem] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """健康检查响应"""
    status: Literal["ok", "degraded"]
    timestamp: datetime
    checks: Dict[str, str]
