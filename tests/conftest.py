"""
测试公共夹具

转发进程和域名解析使用假实现注入，不启动 socat、不访问 DNS。
"""

import logging
import sys
from pathlib import Path

import pytest

# 添加项目路径到 sys.path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pfcli import main as main_module
from pfcli.config import reset_config
from pfcli.errors import DependencyMissingError, PortBusyError, StartError
from pfcli.manager import PortMapManager, reset_manager
from pfcli.mapping import ProcessHandle
from pfcli.store import MappingStore
from pfcli.validator import Validator


class FakeResolver:
    def __init__(self, known=("example.com", "db.internal")):
        self.known = set(known)
        self.queries = []

    def resolve(self, host: str) -> bool:
        self.queries.append(host)
        return host in self.known


class FakeLauncher:
    def __init__(self, available=True):
        self.available = available

    def check(self) -> str:
        if not self.available:
            raise DependencyMissingError("The following required dependencies are missing: socat")
        return "/usr/bin/socat"


class FakeSupervisor:
    """内存中的进程表"""

    def __init__(self):
        self.launcher = FakeLauncher()
        self.alive = set()
        self.busy_ports = set()
        self.fail_locals = set()
        self.terminate_result = None
        self.started = []
        self.terminated = []
        self._next_pid = 1000

    def start(self, local: str, remote: str) -> ProcessHandle:
        port = int(local.rsplit(":", 1)[1])
        if port in self.busy_ports:
            raise PortBusyError(f"Port {port} is already occupied")
        if local in self.fail_locals:
            raise StartError(f"Failed to launch socat for {local}")

        self._next_pid += 1
        handle = ProcessHandle(pid=self._next_pid, started_at=1700000000.25)
        self.alive.add(handle.pid)
        self.started.append((local, remote, handle))
        return handle

    def is_alive(self, handle: ProcessHandle) -> bool:
        return handle.pid in self.alive

    def terminate(self, handle: ProcessHandle) -> bool:
        self.terminated.append(handle)
        if self.terminate_result is not None:
            return self.terminate_result
        if handle.pid not in self.alive:
            return False
        self.alive.discard(handle.pid)
        return True


@pytest.fixture(autouse=True)
def _isolate_globals():
    """恢复根日志配置和全局单例"""
    root = logging.getLogger()
    level = root.level
    reset_config()
    reset_manager()
    yield
    for handler in list(main_module._installed_handlers):
        root.removeHandler(handler)
        handler.close()
    main_module._installed_handlers.clear()
    root.setLevel(level)
    reset_config()
    reset_manager()


@pytest.fixture
def mapping_file(tmp_path) -> Path:
    return tmp_path / "socat_mappings"


@pytest.fixture
def store(mapping_file) -> MappingStore:
    return MappingStore(mapping_file, lock_timeout=0.5)


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver()


@pytest.fixture
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def manager(store, supervisor, resolver) -> PortMapManager:
    return PortMapManager(store=store, supervisor=supervisor, validator=Validator(resolver))
