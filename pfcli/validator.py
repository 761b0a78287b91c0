"""
地址校验

- 本地地址必须是 IPv4:端口
- 远端地址可以是 IPv4:端口 或 域名:端口；域名在有解析器时必须能解析
"""

import ipaddress
import logging
import re
import socket
from dataclasses import dataclass
from typing import Optional

from pfcli.errors import FormatError, ResolutionError

logger = logging.getLogger(__name__)

ROLE_LOCAL = "local"
ROLE_REMOTE = "remote"

_ADDRESS_RE = re.compile(r"^([^:\s]+):([0-9]+)$")
_HOSTNAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9-]*(\.[a-zA-Z0-9][a-zA-Z0-9-]*)*$")


@dataclass(frozen=True)
class Endpoint:
    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"

    @classmethod
    def parse(cls, addr: str) -> "Endpoint":
        """仅做 host:port 语法解析，不校验主机类型"""
        match = _ADDRESS_RE.match(addr or "")
        if not match:
            raise FormatError(f"Invalid address format {addr} (expected host:port)")
        host, port_text = match.groups()
        port = int(port_text)
        if len(port_text) > 5 or not 1 <= port <= 65535:
            raise FormatError("Port must be a number between 1 and 65535")
        return cls(host=host, port=port)


def is_ipv4(host: str) -> bool:
    """点分十进制 IPv4 字面量"""
    try:
        ipaddress.IPv4Address(host)
        return True
    except ValueError:
        return False


def is_hostname(host: str) -> bool:
    return bool(_HOSTNAME_RE.match(host))


class SystemResolver:
    """使用系统解析器（getaddrinfo）检查域名"""

    def resolve(self, host: str) -> bool:
        try:
            return bool(socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP))
        except (socket.gaierror, UnicodeError):
            return False


class Validator:
    def __init__(self, resolver: Optional[SystemResolver] = None):
        """
        Args:
            resolver: 域名解析器；为 None 时视为"无可用解析器"，域名跳过解析并告警
        """
        self.resolver = resolver

    def validate_address(self, addr: str, role: str) -> Endpoint:
        """
        校验地址

        Args:
            addr: host:port
            role: "local" 或 "remote"

        Returns:
            规范化后的 Endpoint

        Raises:
            FormatError: 格式错误
            ResolutionError: 远端域名无法解析
        """
        endpoint = Endpoint.parse(addr)

        if role == ROLE_LOCAL:
            if not is_ipv4(endpoint.host):
                raise FormatError("Local address must be IP:port format")
            return endpoint

        if role != ROLE_REMOTE:
            raise ValueError(f"unknown address role: {role}")

        self._validate_remote_host(endpoint.host)
        return endpoint

    def _validate_remote_host(self, host: str):
        if is_ipv4(host):
            return
        if not is_hostname(host):
            raise FormatError(f"Invalid IP or domain format {host}")

        if self.resolver is None:
            logger.warning(
                f"No domain resolver available. Skipping resolution check for {host}."
            )
            return

        if not self.resolver.resolve(host):
            raise ResolutionError(
                f"Unable to resolve domain {host}. If this is a private domain, "
                "ensure your resolver is configured correctly."
            )
