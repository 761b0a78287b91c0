"""
异常定义

所有用户可见的错误都继承自 PortMapError，命令入口统一捕获后以退出码 1 结束。
"""


class PortMapError(Exception):
    """端口映射错误基类"""


class FormatError(PortMapError):
    """地址/端口格式错误"""


class ResolutionError(PortMapError):
    """远端域名无法解析"""


class DuplicateError(PortMapError):
    """本地地址已存在映射"""


class NotFoundError(PortMapError):
    """映射不存在"""


class StartError(PortMapError):
    """转发进程启动失败"""


class PortBusyError(StartError):
    """本地端口已被占用"""


class DependencyMissingError(PortMapError):
    """缺少转发程序（socat）"""


class StoreLockError(PortMapError):
    """映射文件锁获取超时"""
