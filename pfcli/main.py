"""
命令行入口

    pfcli add <local IP:port> <remote IP or domain:port>
    pfcli remove|rm|del <local IP:port>
    pfcli list|ls
    pfcli restore
    pfcli serve
    pfcli help

建议配合 crontab 定期恢复：
    */5 * * * * /usr/bin/pfcli restore >> /var/log/socat_manage.log 2>&1
"""

import argparse
import logging
import sys
from typing import List, Optional

from pfcli.config import AppConfig, load_config
from pfcli.errors import PortMapError, StartError
from pfcli.manager import (
    RESTORE_DROPPED,
    RESTORE_RESTARTED,
    RESTORE_RUNNING,
    PortMapManager,
    build_manager,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_installed_handlers: List[logging.Handler] = []

EXAMPLES = """Example:
  pfcli add 127.0.0.1:8080 example.com:80
  pfcli rm 127.0.0.1:8080
  pfcli ls
  pfcli restore"""


class _ConsoleFormatter(logging.Formatter):
    """控制台输出：Warning: ... / Error: ..."""

    def format(self, record):
        return f"{record.levelname.title()}: {record.getMessage()}"


class _Parser(argparse.ArgumentParser):
    """参数错误时打印用法并以退出码 1 结束"""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"Error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(
        prog="pfcli",
        description="Manage socat port mappings",
        epilog=EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-c", "--config", help="config file (default: $PFCLI_CONFIG or /etc/pfcli/config.yaml)")
    sub = parser.add_subparsers(dest="command", metavar="<command>")

    add = sub.add_parser("add", help="Add a new port mapping")
    add.add_argument("local", metavar="<local IP:port>")
    add.add_argument("remote", metavar="<remote IP or domain:port>")

    remove = sub.add_parser("remove", aliases=["rm", "del"], help="Remove a specified port mapping")
    remove.add_argument("local", metavar="<local IP:port>")

    sub.add_parser("list", aliases=["ls"], help="List all active mappings")
    sub.add_parser("restore", help="Restore all failed mappings")
    sub.add_parser("serve", help="Run the control API and periodic restore")
    sub.add_parser("help", help="Show this help information")
    return parser


def setup_logging(config: AppConfig, console_level: int = logging.WARNING):
    """
    配置日志

    - 日志文件：记录所有操作
    - stderr：只输出告警及以上（例如域名未解析、进程已不存在）

    Raises:
        OSError: 无法创建日志文件
    """
    level = getattr(logging, config.logging.level.upper(), logging.INFO)

    log_path = config.log_path
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(str(log_path), encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(console_level)
    if console_level >= logging.WARNING:
        console_handler.setFormatter(_ConsoleFormatter())
    else:
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    root.setLevel(level)
    # 重复调用时替换上一次安装的 handler
    for handler in _installed_handlers:
        root.removeHandler(handler)
        handler.close()
    _installed_handlers[:] = [file_handler, console_handler]
    for handler in _installed_handlers:
        root.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


# =============================================================================
# 命令
# =============================================================================

def cmd_add(manager: PortMapManager, args) -> int:
    try:
        mapping = manager.add(args.local, args.remote)
    except StartError as e:
        print(f"Error: Unable to add mapping {args.local} -> {args.remote}: {e}", file=sys.stderr)
        return 1
    print(f"Successfully added mapping: {mapping.local} -> {mapping.remote}")
    return 0


def cmd_remove(manager: PortMapManager, args) -> int:
    result = manager.remove(args.local)
    if result.terminated:
        print(f"Successfully removed mapping: {result.mapping.local}")
    return 0


def cmd_list(manager: PortMapManager, args) -> int:
    statuses = manager.list()
    if not statuses:
        print("No active mappings currently")
        return 0

    print("Current port mappings:")
    print("Local address:port -> Remote address:port (PID)")
    print("-----------------------------------")
    for status in statuses:
        m = status.mapping
        if status.alive:
            print(f"{m.local} -> {m.remote} ({m.handle.pid})")
        else:
            print(f"{m.local} -> {m.remote} ({m.handle.pid}, invalid)")
    return 0


def cmd_restore(manager: PortMapManager, args) -> int:
    outcomes = manager.restore()
    if not outcomes:
        print("No mapping records to restore")
        return 0

    print("Restoring mappings...")
    for outcome in outcomes:
        m = outcome.mapping
        if outcome.action == RESTORE_RUNNING:
            print(f"Mapping {m.local} -> {m.remote} (PID: {m.handle.pid}) is still running")
        elif outcome.action == RESTORE_RESTARTED:
            print(f"Restored mapping: {m.local} -> {m.remote}")
        elif outcome.action == RESTORE_DROPPED:
            print(f"Unable to restore mapping: {m.local} -> {m.remote}")
    return 0


def serve(manager: PortMapManager, config: AppConfig) -> int:
    """常驻运行控制接口"""
    import uvicorn

    from pfcli.app import create_app

    logger.info(f"pfcli control API listening on {config.daemon.listen}")
    uvicorn.run(
        create_app(manager, config),
        host=config.daemon.host,
        port=config.daemon.port,
        log_level=config.logging.level.lower(),
        access_log=False,
    )
    return 0


COMMANDS = {
    "add": cmd_add,
    "remove": cmd_remove,
    "rm": cmd_remove,
    "del": cmd_remove,
    "list": cmd_list,
    "ls": cmd_list,
    "restore": cmd_restore,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "help":
        parser.print_help()
        return 0
    if args.command not in COMMANDS and args.command != "serve":
        parser.print_help()
        return 1

    config = load_config(args.config)

    try:
        setup_logging(config, logging.INFO if args.command == "serve" else logging.WARNING)
    except OSError as e:
        print(f"Error: Unable to create log file {config.log_path}: {e}", file=sys.stderr)
        return 1

    manager = build_manager(config)
    try:
        manager.supervisor.launcher.check()
        manager.store.ensure_exists()
    except PortMapError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Error: Unable to create file {manager.store.path}: {e}", file=sys.stderr)
        return 1

    if args.command == "serve":
        return serve(manager, config)

    try:
        return COMMANDS[args.command](manager, args)
    except PortMapError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
