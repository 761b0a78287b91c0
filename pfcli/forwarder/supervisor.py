"""
转发进程管理

负责启动转发进程、检查进程是否存活、强制终止进程。存活只在被询问时检查，
没有后台检测。

句柄带有进程启动时间时，PID 存在但启动时间不一致视为已失效（PID 被复用）；
旧格式句柄（只有 PID）只能检查"该 PID 存在"。
"""

import logging
import os
import socket
from typing import Callable, Optional

import psutil

from pfcli.errors import PortBusyError
from pfcli.mapping import ProcessHandle
from pfcli.validator import Endpoint

logger = logging.getLogger(__name__)

# 启动时间按 2 位小数持久化
START_TIME_TOLERANCE = 0.05


def _is_port_available(host: str, port: int) -> bool:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, port))
        return True
    except OSError:
        return False
    finally:
        try:
            sock.close()
        except Exception:
            pass


def is_port_bound(host: str, port: int) -> bool:
    """
    端口是否已有进程监听（任意地址）

    查询系统 socket 表；无权限时退化为 bind 探测。
    """
    try:
        conns = psutil.net_connections(kind="tcp")
    except psutil.AccessDenied:
        return not _is_port_available(host, port)

    return any(
        c.status == psutil.CONN_LISTEN and c.laddr and c.laddr.port == port
        for c in conns
    )


def _process_start_time(pid: int) -> Optional[float]:
    try:
        return round(psutil.Process(pid).create_time(), 2)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


def _reap(pid: int):
    # 仅对本进程的子进程有效（serve 模式）
    if not hasattr(os, "WNOHANG"):
        return
    try:
        os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        pass


class ProcessSupervisor:
    def __init__(self, launcher, port_check: Callable[[str, int], bool] = is_port_bound):
        """
        Args:
            launcher: 转发进程启动器，需提供 launch(local, remote) -> pid
            port_check: 端口占用检查 (host, port) -> bool
        """
        self.launcher = launcher
        self.port_check = port_check

    def start(self, local: str, remote: str) -> ProcessHandle:
        """
        启动一条映射的转发进程

        不等待转发进程完成 bind，端口检查与实际 bind 之间存在竞争窗口。

        Raises:
            PortBusyError: 本地端口已被占用（不会启动任何进程）
            StartError: 启动失败
        """
        local_ep = Endpoint.parse(local)
        remote_ep = Endpoint.parse(remote)

        if self.port_check(local_ep.host, local_ep.port):
            logger.info(f"Port {local_ep.port} is already occupied, skipping start")
            raise PortBusyError(f"Port {local_ep.port} is already occupied")

        pid = self.launcher.launch(local_ep, remote_ep)
        handle = ProcessHandle(pid=pid, started_at=_process_start_time(pid))
        logger.info(f"Started mapping: {local} -> {remote}, PID: {pid}")
        return handle

    def is_alive(self, handle: ProcessHandle) -> bool:
        try:
            proc = psutil.Process(handle.pid)
            if proc.status() == psutil.STATUS_ZOMBIE:
                _reap(handle.pid)
                return False
            if handle.started_at is not None:
                if abs(proc.create_time() - handle.started_at) > START_TIME_TOLERANCE:
                    logger.debug(f"pid {handle.pid} reused by another process")
                    return False
            return True
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            # 进程存在但无权限读取详情
            return True

    def terminate(self, handle: ProcessHandle) -> bool:
        """
        强制终止（SIGKILL）

        Returns:
            信号是否发送成功；进程不存在或 PID 已被复用时返回 False
        """
        if not self.is_alive(handle):
            return False
        try:
            psutil.Process(handle.pid).kill()
            return True
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug(f"kill {handle.pid} failed: {e}")
            return False
