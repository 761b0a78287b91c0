"""
映射生命周期管理

add / remove / list / restore 四个操作，组合 Validator、MappingStore 和
ProcessSupervisor。所有"读-判断-写"序列都在同一个存储事务内完成。

restore 中重启失败的记录会被直接从存储中删除，不会保留到下一次 restore。
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from pfcli.config import AppConfig, get_config
from pfcli.errors import DuplicateError, FormatError, NotFoundError, StartError
from pfcli.forwarder import ProcessSupervisor, SocatLauncher
from pfcli.mapping import Mapping, ProcessHandle
from pfcli.store import MappingStore
from pfcli.validator import ROLE_LOCAL, ROLE_REMOTE, SystemResolver, Validator

logger = logging.getLogger(__name__)

RESTORE_RUNNING = "running"
RESTORE_RESTARTED = "restarted"
RESTORE_DROPPED = "dropped"


@dataclass
class MappingStatus:
    mapping: Mapping
    alive: bool


@dataclass
class RemoveResult:
    mapping: Mapping
    terminated: bool


@dataclass
class RestoreOutcome:
    mapping: Mapping
    action: str  # running|restarted|dropped
    new_handle: Optional[ProcessHandle] = None
    error: Optional[str] = None


class PortMapManager:
    def __init__(self, store: MappingStore, supervisor: ProcessSupervisor, validator: Validator):
        self.store = store
        self.supervisor = supervisor
        self.validator = validator

    def add(self, local: str, remote: str) -> Mapping:
        """
        新增映射：校验 -> 去重 -> 启动转发进程 -> 写入记录

        Raises:
            FormatError / ResolutionError: 地址不合法
            DuplicateError: 本地地址已存在映射
            StartError: 启动失败（含 PortBusyError），不写入任何记录
        """
        local_key = str(self.validator.validate_address(local, ROLE_LOCAL))
        remote_key = str(self.validator.validate_address(remote, ROLE_REMOTE))

        with self.store.transaction():
            if self.store.find_by_local(local_key) is not None:
                raise DuplicateError(f"Mapping {local_key} already exists")

            handle = self.supervisor.start(local_key, remote_key)
            mapping = Mapping(local=local_key, remote=remote_key, handle=handle)
            self.store.append(mapping)

        return mapping

    def remove(self, local: str) -> RemoveResult:
        """
        删除映射

        终止进程失败只记录警告，记录总是会被删除。

        Raises:
            FormatError: 地址不合法
            NotFoundError: 映射不存在（不改动存储）
        """
        local_key = str(self.validator.validate_address(local, ROLE_LOCAL))

        with self.store.transaction():
            mapping = self.store.find_by_local(local_key)
            if mapping is None:
                raise NotFoundError(f"Mapping {local_key} not found")

            terminated = self.supervisor.terminate(mapping.handle)
            if terminated:
                logger.info(f"Removed mapping: {local_key}, PID: {mapping.handle.pid}")
            else:
                logger.warning(
                    f"Process PID {mapping.handle.pid} does not exist, cleaning up record"
                )
            self.store.delete_by_local(local_key)

        return RemoveResult(mapping=mapping, terminated=terminated)

    def list(self) -> List[MappingStatus]:
        return [
            MappingStatus(mapping=m, alive=self.supervisor.is_alive(m.handle))
            for m in self.store.all()
        ]

    def restore(self) -> List[RestoreOutcome]:
        """
        恢复失效映射

        - 进程存活：记录原样保留
        - 进程失效：重新启动，成功则更新句柄，失败则删除该记录
        """
        outcomes: List[RestoreOutcome] = []

        with self.store.transaction():
            records = list(self.store.all())
            if not records:
                logger.info("No mapping records to restore")
                return outcomes

            kept: List[Mapping] = []
            for mapping in records:
                if self.supervisor.is_alive(mapping.handle):
                    kept.append(mapping)
                    outcomes.append(RestoreOutcome(mapping=mapping, action=RESTORE_RUNNING))
                    continue

                logger.info(
                    f"Mapping {mapping.local} -> {mapping.remote} "
                    f"(PID: {mapping.handle.pid}) is invalid, attempting to restart"
                )
                try:
                    handle = self.supervisor.start(mapping.local, mapping.remote)
                except (StartError, FormatError) as e:
                    # 无法解析的旧记录与启动失败一样按丢弃处理
                    logger.info(
                        f"Unable to restore mapping {mapping.local} -> {mapping.remote}: {e}, "
                        "record dropped"
                    )
                    outcomes.append(
                        RestoreOutcome(mapping=mapping, action=RESTORE_DROPPED, error=str(e))
                    )
                    continue

                kept.append(Mapping(local=mapping.local, remote=mapping.remote, handle=handle))
                outcomes.append(
                    RestoreOutcome(mapping=mapping, action=RESTORE_RESTARTED, new_handle=handle)
                )

            self.store.replace_all(kept)

        return outcomes


def build_manager(config: AppConfig) -> PortMapManager:
    """按配置组装默认实现（socat + 系统解析器）"""
    launcher = SocatLauncher(
        binary=config.forwarder.binary,
        extra_listen_options=config.forwarder.extra_listen_options,
    )
    resolver = SystemResolver() if config.resolve_hostnames else None
    return PortMapManager(
        store=MappingStore(config.mapping_path, lock_timeout=config.lock_timeout),
        supervisor=ProcessSupervisor(launcher),
        validator=Validator(resolver),
    )


_manager: Optional[PortMapManager] = None


def get_manager() -> PortMapManager:
    global _manager
    if _manager is None:
        _manager = build_manager(get_config())
    return _manager


def reset_manager():
    """重置全局实例（主要用于测试）"""
    global _manager
    _manager = None
