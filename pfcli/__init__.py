"""
pfcli - socat 端口映射管理工具

负责：
- 校验本地/远端地址
- 为每条映射启动并托管一个 socat 转发进程
- 持久化映射记录（文本文件）
- 检测失效进程并恢复
"""

__version__ = "0.1.0"
