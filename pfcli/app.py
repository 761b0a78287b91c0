"""
FastAPI 控制接口

`pfcli serve` 常驻运行时，通过本地 HTTP 接口提供 add / remove / list / restore，
并按 daemon.restore_interval 周期执行 restore。
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from pfcli import __version__
from pfcli.config import AppConfig, get_config
from pfcli.errors import (
    DependencyMissingError,
    DuplicateError,
    FormatError,
    NotFoundError,
    PortBusyError,
    PortMapError,
    ResolutionError,
    StartError,
    StoreLockError,
)
from pfcli.manager import RESTORE_DROPPED, RESTORE_RESTARTED, PortMapManager, get_manager
from pfcli.models import (
    HealthResponse,
    MappingCreateRequest,
    MappingInfo,
    RemoveResponse,
    RestoreItem,
    RestoreResponse,
)

logger = logging.getLogger(__name__)

# 按继承顺序匹配，子类在前
_ERROR_STATUS = [
    (FormatError, 400),
    (ResolutionError, 400),
    (NotFoundError, 404),
    (DuplicateError, 409),
    (PortBusyError, 409),
    (StartError, 500),
    (DependencyMissingError, 500),
    (StoreLockError, 503),
]


def error_status(exc: PortMapError) -> int:
    for exc_type, status_code in _ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status_code
    return 500


def get_port_manager(request: Request) -> PortMapManager:
    """获取映射管理器（create_app 传入的实例优先）"""
    manager = getattr(request.app.state, "manager", None)
    return manager if manager is not None else get_manager()


def get_app_config(request: Request) -> AppConfig:
    config = getattr(request.app.state, "config", None)
    return config if config is not None else get_config()


def verify_token(request: Request, authorization: Optional[str] = Header(None)) -> bool:
    """
    验证 Token

    daemon.token 未配置时不做校验（仅监听本机时使用）。

    Raises:
        HTTPException: Token 无效时抛出 401 错误
    """
    expected = get_app_config(request).daemon.token
    if not expected:
        return True

    if not authorization:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    if parts[1] != expected:
        raise HTTPException(status_code=401, detail="Invalid token")

    return True


async def restore_loop(manager: PortMapManager, interval: int):
    """周期性恢复失效映射"""
    while True:
        try:
            await asyncio.sleep(interval)
            outcomes = await asyncio.to_thread(manager.restore)
            restarted = sum(1 for o in outcomes if o.action == RESTORE_RESTARTED)
            dropped = sum(1 for o in outcomes if o.action == RESTORE_DROPPED)
            if restarted or dropped:
                logger.info(f"periodic restore: {restarted} restarted, {dropped} dropped")
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.error(f"periodic restore failed: {e}", exc_info=True)


def create_app(manager: Optional[PortMapManager] = None, config: Optional[AppConfig] = None) -> FastAPI:
    """
    创建 FastAPI 应用实例

    Args:
        manager: 映射管理器，默认使用全局实例
        config: 应用配置，默认使用全局配置
    """
    app = FastAPI(
        title="pfcli",
        version=__version__,
        description="socat 端口映射控制接口",
    )
    app.state.manager = manager
    app.state.config = config

    @app.exception_handler(PortMapError)
    async def _port_map_error_handler(request: Request, exc: PortMapError):
        return JSONResponse(status_code=error_status(exc), content={"detail": str(exc)})

    @app.on_event("startup")
    async def _startup_restore():
        config = app.state.config or get_config()
        if config.daemon.restore_interval > 0:
            app.state.restore_task = asyncio.create_task(
                restore_loop(app.state.manager or get_manager(), config.daemon.restore_interval)
            )
            logger.info(f"periodic restore every {config.daemon.restore_interval}s")

    @app.on_event("shutdown")
    async def _shutdown_restore():
        task = getattr(app.state, "restore_task", None)
        if task and not task.done():
            task.cancel()
            await task

    @app.get("/v1/health", response_model=HealthResponse)
    def get_health(manager: PortMapManager = Depends(get_port_manager)):
        """健康检查（无需认证）"""
        checks = {}
        status = "ok"

        try:
            manager.supervisor.launcher.check()
            checks["forwarder"] = "ok"
        except DependencyMissingError as e:
            checks["forwarder"] = str(e)
            status = "degraded"

        checks["store"] = str(manager.store.path)
        return HealthResponse(status=status, timestamp=datetime.utcnow(), checks=checks)

    @app.get("/v1/mappings", response_model=List[MappingInfo])
    def list_mappings(
        manager: PortMapManager = Depends(get_port_manager),
        authorized: bool = Depends(verify_token),
    ):
        return [MappingInfo.from_status(s) for s in manager.list()]

    @app.post("/v1/mappings", response_model=MappingInfo, status_code=201)
    def add_mapping(
        req: MappingCreateRequest,
        manager: PortMapManager = Depends(get_port_manager),
        authorized: bool = Depends(verify_token),
    ):
        mapping = manager.add(req.local, req.remote)
        return MappingInfo.from_mapping(mapping, alive=True)

    @app.delete("/v1/mappings/{local}", response_model=RemoveResponse)
    def remove_mapping(
        local: str,
        manager: PortMapManager = Depends(get_port_manager),
        authorized: bool = Depends(verify_token),
    ):
        result = manager.remove(local)
        return RemoveResponse(
            mapping=MappingInfo.from_mapping(result.mapping),
            terminated=result.terminated,
        )

    @app.post("/v1/restore", response_model=RestoreResponse)
    def restore_mappings(
        manager: PortMapManager = Depends(get_port_manager),
        authorized: bool = Depends(verify_token),
    ):
        outcomes = manager.restore()
        return RestoreResponse(items=[RestoreItem.from_outcome(o) for o in outcomes])

    return app
