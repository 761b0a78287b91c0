"""
pfcli 主程序入口

使用方式:
    python -m pfcli <command> [parameters]
    或
    pfcli <command> [parameters]
"""

import sys

from pfcli.main import main as _main


def main():
    sys.exit(_main())


if __name__ == "__main__":
    main()
