"""
配置管理模块

从 YAML 文件加载配置，支持环境变量覆盖：
- PFCLI_CONFIG: 配置文件路径
- MAPPING_FILE: 映射记录文件
- LOG_FILE: 日志文件
"""

import os
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = "/etc/pfcli/config.yaml"
DEFAULT_MAPPING_FILE = "~/.socat_mappings"
DEFAULT_LOG_FILE = "/var/log/socat_manage.log"


class ForwarderConfig(BaseModel):
    """转发程序配置"""

    binary: str = Field(default="socat", description="转发程序名称或路径")
    extra_listen_options: List[str] = Field(
        default_factory=list, description="追加到 TCP-LISTEN 的 socat 选项"
    )


class LoggingConfig(BaseModel):
    """日志配置"""

    level: str = "INFO"
    file: str = DEFAULT_LOG_FILE


class DaemonConfig(BaseModel):
    """守护进程（控制接口）配置"""

    listen: str = Field(default="127.0.0.1:9110", description="控制接口监听地址")
    token: Optional[str] = Field(default=None, description="Bearer Token，不设置则不校验")
    restore_interval: int = Field(default=300, description="自动恢复间隔（秒），0 表示关闭")

    @property
    def host(self) -> str:
        return self.listen.rsplit(":", 1)[0]

    @property
    def port(self) -> int:
        return int(self.listen.rsplit(":", 1)[1])


class AppConfig(BaseModel):
    """应用配置"""

    mapping_file: str = DEFAULT_MAPPING_FILE
    resolve_hostnames: bool = Field(default=True, description="是否解析远端域名")
    lock_timeout: float = Field(default=10.0, description="映射文件锁等待时间（秒）")
    forwarder: ForwarderConfig = Field(default_factory=ForwarderConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)

    @property
    def mapping_path(self) -> Path:
        return Path(self.mapping_file).expanduser()

    @property
    def log_path(self) -> Path:
        return Path(self.logging.file).expanduser()


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """
    加载配置文件

    优先级：
    1. 参数指定的路径
    2. 环境变量 PFCLI_CONFIG
    3. 默认路径 /etc/pfcli/config.yaml

    配置文件不存在时使用默认配置；MAPPING_FILE / LOG_FILE 环境变量始终优先。
    """
    if config_path is None:
        config_path = os.environ.get("PFCLI_CONFIG", DEFAULT_CONFIG_PATH)

    raw_config = {}
    config_file = Path(config_path)
    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f) or {}

    mapping_file = os.environ.get("MAPPING_FILE")
    if mapping_file:
        raw_config["mapping_file"] = mapping_file

    log_file = os.environ.get("LOG_FILE")
    if log_file:
        raw_config.setdefault("logging", {})
        raw_config["logging"]["file"] = log_file

    return AppConfig(**raw_config)


# 全局配置实例（延迟加载）
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """获取全局配置实例"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config():
    """重置配置（主要用于测试）"""
    global _config
    _config = None
