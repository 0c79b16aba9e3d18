from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from model_proxy.api.handlers import MessagesHandler
from model_proxy.api.handlers import router as messages_router
from model_proxy.api.middleware.timing import setup_middlewares
from model_proxy.api.routes import router as health_router
from model_proxy.common.logging import (
    configure_logging,
    get_logger_with_request_id,
    get_request_id_from_request,
)
from model_proxy.config.settings import Config, get_config_file_path, reload_config
from model_proxy.config.watcher import ConfigWatcher
from model_proxy.core.pipeline import ProxyContext
from model_proxy.models.errors import (
    ERROR_STATUS_MAPPING,
    ErrorTypes,
    ProxyError,
    get_error_response,
)


def _format_validation_errors(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors()[:5]:
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "body")
        parts.append(f"{location or 'body'}: {error.get('msg', 'invalid')}")
    return "请求格式错误 - " + "; ".join(parts)


def _error_json(error_type: str, message: str, status_code: int | None = None) -> JSONResponse:
    error_response = get_error_response(error_type, message)
    return JSONResponse(
        status_code=status_code or ERROR_STATUS_MAPPING[error_type],
        content=error_response.model_dump(),
    )


def create_app(
    config: Config | None = None,
    context: ProxyContext | None = None,
    watch_config: bool = True,
) -> FastAPI:
    """创建FastAPI应用

    Args:
        config: 应用配置，None 时从配置文件同步加载
        context: 预先构建的进程级上下文（测试时注入假的传输层与时钟）
        watch_config: 是否启用配置文件热重载
    """
    if context is not None:
        config = context.config
    elif config is None:
        config = Config.from_file_sync()
    handler = MessagesHandler(context) if context is not None else MessagesHandler.create(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用生命周期管理"""
        host, port = await config.get_server_config()

        # 配置Loguru日志
        configure_logging(config.logging)

        async def on_config_reload():
            """配置重载时的回调函数，令牌桶与压缩策略保持不变"""
            new_config = await reload_config()
            configure_logging(new_config.logging)
            app.state.messages_handler.context.apply_config(new_config)
            logger.info("配置热重载完成，服务商配置已更新")

        config_watcher = None
        if watch_config:
            config_watcher = ConfigWatcher(get_config_file_path())
            config_watcher.add_reload_callback(on_config_reload)
            await config_watcher.start_watching()
        app.state.config_watcher = config_watcher

        logger.info(
            f"启动 Model Proxy 服务器 - Host: {host}, Port: {port}, LogLevel: {config.logging.level}"
        )

        yield

        # 关闭时的清理工作
        if config_watcher is not None:
            config_watcher.stop_watching()
        await app.state.messages_handler.aclose()
        logger.info("服务器已停止")

    app = FastAPI(
        title="Model Proxy Server",
        version="0.1.0",
        description="Multi-provider chat proxy speaking the Anthropic Messages API.",
        lifespan=lifespan,
    )
    app.state.messages_handler = handler

    # 设置CORS中间件
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    setup_middlewares(app)

    app.include_router(health_router)
    app.include_router(messages_router)

    @app.get("/")
    async def root():
        return {"message": "Welcome to the Model Proxy Server"}

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """请求体验证失败（包括非法JSON）统一返回 invalid_request_error"""
        bound_logger = get_logger_with_request_id(get_request_id_from_request(request))
        message = _format_validation_errors(exc)
        bound_logger.warning(f"请求验证失败 - {message}")
        return _error_json(ErrorTypes.INVALID_REQUEST, message)

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError):
        response = JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response().model_dump(),
        )
        response.headers.update(exc.headers())
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _error_json(ErrorTypes.INVALID_REQUEST, "请求的资源不存在", 404)
        return _error_json(ErrorTypes.API, str(exc.detail), exc.status_code)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """全局异常处理，防止内部异常直接返回给客户端"""
        bound_logger = get_logger_with_request_id(get_request_id_from_request(request))
        bound_logger.opt(exception=exc).error(
            f"捕获未处理的服务器异常 - {type(exc).__name__}: {exc}, "
            f"{request.method} {request.url.path}"
        )
        return _error_json(ErrorTypes.API, "服务器内部错误，请稍后重试")

    return app
