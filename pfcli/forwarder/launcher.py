"""
socat 转发进程启动器

每条映射对应一个独立的 socat 进程：
    socat TCP-LISTEN:<port>,bind=<ip>,reuseaddr,fork TCP:<host>:<port>

进程放在独立会话中运行，pfcli 退出后继续存活。
"""

import logging
import shutil
import subprocess
from typing import List, Optional

from pfcli.errors import DependencyMissingError, StartError
from pfcli.validator import Endpoint

logger = logging.getLogger(__name__)


class SocatLauncher:
    def __init__(self, binary: str = "socat", extra_listen_options: Optional[List[str]] = None):
        self.binary = binary
        self.extra_listen_options = list(extra_listen_options or [])

    def check(self) -> str:
        """
        检查 socat 是否可用

        Returns:
            socat 可执行文件路径

        Raises:
            DependencyMissingError: 找不到 socat
        """
        path = shutil.which(self.binary)
        if not path:
            raise DependencyMissingError(
                f"The following required dependencies are missing: {self.binary}. "
                f"Please install them using your package manager "
                f"(e.g., yum install {self.binary} or apt-get install {self.binary})"
            )
        return path

    def build_command(self, local: Endpoint, remote: Endpoint) -> List[str]:
        listen = ",".join(
            [f"TCP-LISTEN:{local.port}", f"bind={local.host}", "reuseaddr", "fork"]
            + self.extra_listen_options
        )
        return [self.check(), listen, f"TCP:{remote.host}:{remote.port}"]

    def launch(self, local: Endpoint, remote: Endpoint) -> int:
        """
        启动转发进程，不等待其完成初始化

        Returns:
            进程 PID
        """
        cmd = self.build_command(local, remote)
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                close_fds=True,
                start_new_session=True,
            )
        except OSError as e:
            raise StartError(f"Failed to launch {self.binary}: {e}") from e

        logger.debug(f"spawned: {' '.join(cmd)} (pid={proc.pid})")
        return proc.pid
