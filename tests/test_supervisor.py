"""
测试转发进程管理

使用真实的子进程（python sleep）代替 socat，验证 psutil 存活检查与终止。
"""

import os
import signal
import socket
import subprocess
import sys
import time

import psutil
import pytest

from pfcli.errors import DependencyMissingError, PortBusyError, StartError
from pfcli.forwarder import ProcessSupervisor, SocatLauncher, is_port_bound
from pfcli.forwarder import launcher as launcher_module
from pfcli.mapping import ProcessHandle
from pfcli.validator import Endpoint


class SleepLauncher:
    """启动一个长时间 sleep 的子进程"""

    def __init__(self):
        self.procs = []
        self.launched = []

    def launch(self, local, remote) -> int:
        proc = subprocess.Popen(
            [sys.executable, "-c", "import time; time.sleep(60)"],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        self.procs.append(proc)
        self.launched.append((str(local), str(remote)))
        return proc.pid


@pytest.fixture
def sleep_launcher():
    launcher = SleepLauncher()
    yield launcher
    for proc in launcher.procs:
        if proc.poll() is None:
            proc.kill()
        proc.wait()


@pytest.fixture
def supervisor(sleep_launcher):
    return ProcessSupervisor(sleep_launcher, port_check=lambda host, port: False)


def test_handle_format():
    assert str(ProcessHandle(123)) == "123"
    assert str(ProcessHandle(123, 1700000000.5)) == "123@1700000000.50"
    assert ProcessHandle.parse("123@1700000000.50") == ProcessHandle(123, 1700000000.5)
    assert ProcessHandle.parse("77") == ProcessHandle(77, None)
    assert str(ProcessHandle.parse("0123")) == "0123"
    assert str(ProcessHandle.parse("123@1.5")) == "123@1.5"
    assert ProcessHandle.parse("0123") == ProcessHandle(123)
    for bad in ("", "abc", "0", "-5", "12@x"):
        with pytest.raises(ValueError):
            ProcessHandle.parse(bad)


def test_start_returns_live_handle(supervisor, sleep_launcher):
    handle = supervisor.start("127.0.0.1:18080", "example.com:80")

    assert handle.pid == sleep_launcher.procs[0].pid
    assert handle.started_at is not None
    assert sleep_launcher.launched == [("127.0.0.1:18080", "example.com:80")]
    assert supervisor.is_alive(handle)


def test_start_refuses_busy_port(sleep_launcher):
    supervisor = ProcessSupervisor(sleep_launcher, port_check=lambda host, port: port == 18080)

    with pytest.raises(PortBusyError):
        supervisor.start("127.0.0.1:18080", "example.com:80")
    assert sleep_launcher.launched == []


def test_port_busy_is_a_start_error():
    assert issubclass(PortBusyError, StartError)


def test_terminate_kills_process(supervisor, sleep_launcher):
    handle = supervisor.start("127.0.0.1:18081", "10.0.0.1:80")

    assert supervisor.terminate(handle) is True
    sleep_launcher.procs[0].wait(timeout=5)
    assert supervisor.is_alive(handle) is False


def test_dead_process_reported(supervisor, sleep_launcher):
    handle = supervisor.start("127.0.0.1:18082", "10.0.0.1:80")
    proc = sleep_launcher.procs[0]
    proc.kill()
    proc.wait(timeout=5)

    assert supervisor.is_alive(handle) is False
    assert supervisor.terminate(handle) is False


def test_zombie_counts_as_dead(supervisor, sleep_launcher):
    handle = supervisor.start("127.0.0.1:18083", "10.0.0.1:80")
    os.kill(handle.pid, signal.SIGKILL)

    # 子进程退出后未被回收，处于僵尸状态
    deadline = time.monotonic() + 5
    while psutil.Process(handle.pid).status() != psutil.STATUS_ZOMBIE:
        assert time.monotonic() < deadline
        time.sleep(0.01)

    assert supervisor.is_alive(handle) is False
    assert not psutil.pid_exists(handle.pid)


def test_pid_reuse_detected_by_start_time():
    me = psutil.Process(os.getpid())
    supervisor = ProcessSupervisor(launcher=None)

    assert supervisor.is_alive(ProcessHandle(me.pid, round(me.create_time(), 2)))
    assert supervisor.is_alive(ProcessHandle(me.pid))

    reused = ProcessHandle(me.pid, me.create_time() - 3600)
    assert supervisor.is_alive(reused) is False
    # 不会向被复用 PID 的进程发送信号
    assert supervisor.terminate(reused) is False


def test_is_port_bound_detects_listener():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind(("127.0.0.1", 0))
        sock.listen(1)
        port = sock.getsockname()[1]
        assert is_port_bound("127.0.0.1", port) is True
    finally:
        sock.close()


def test_is_port_bound_falls_back_to_test_bind(monkeypatch):
    def _denied(kind="inet"):
        raise psutil.AccessDenied()

    monkeypatch.setattr(psutil, "net_connections", _denied)

    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind(("127.0.0.1", 0))
        sock.listen(1)
        port = sock.getsockname()[1]
        assert is_port_bound("127.0.0.1", port) is True
    finally:
        sock.close()


def test_socat_command(monkeypatch):
    monkeypatch.setattr(launcher_module.shutil, "which", lambda name: f"/usr/bin/{name}")
    launcher = SocatLauncher()

    cmd = launcher.build_command(Endpoint("127.0.0.1", 8080), Endpoint("example.com", 80))

    assert cmd == [
        "/usr/bin/socat",
        "TCP-LISTEN:8080,bind=127.0.0.1,reuseaddr,fork",
        "TCP:example.com:80",
    ]


def test_socat_extra_listen_options(monkeypatch):
    monkeypatch.setattr(launcher_module.shutil, "which", lambda name: f"/opt/bin/{name}")
    launcher = SocatLauncher(extra_listen_options=["backlog=64"])

    cmd = launcher.build_command(Endpoint("0.0.0.0", 2222), Endpoint("10.0.0.5", 22))

    assert cmd[1] == "TCP-LISTEN:2222,bind=0.0.0.0,reuseaddr,fork,backlog=64"


def test_socat_missing(monkeypatch):
    monkeypatch.setattr(launcher_module.shutil, "which", lambda name: None)
    launcher = SocatLauncher()

    with pytest.raises(DependencyMissingError):
        launcher.check()
    with pytest.raises(DependencyMissingError):
        launcher.launch(Endpoint("127.0.0.1", 8080), Endpoint("example.com", 80))
