"""配置文件监听和热重载模块

监听配置文件的变化，当配置文件被修改时自动重新加载配置。
使用 watchdog 库监听文件系统事件。

热重载只刷新日志配置与服务商地址/凭证，速率令牌桶与压缩策略在进程生命周期内不变。
"""

import asyncio
import inspect
import json
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

import aiofiles
from loguru import logger
from pydantic import ValidationError
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .settings import Config, apply_env_overrides, get_config_file_path


class ConfigFileHandler(FileSystemEventHandler):
    """配置文件变化事件处理器"""

    def __init__(
        self,
        config_path: Path,
        callback: Callable[[], None],
        debounce_seconds: float = 0.1,
    ):
        """
        Args:
            config_path: 要监听的配置文件路径
            callback: 配置文件变化时的回调函数
            debounce_seconds: 触发回调前的延迟，确保文件写入完成
        """
        self.config_path = config_path.resolve()
        self.callback = callback
        self.debounce_seconds = debounce_seconds
        self._last_modified = 0.0
        self._timer: threading.Timer | None = None
        self._lock = threading.Lock()

    def _matches(self, path: str | bytes) -> bool:
        if isinstance(path, bytes):
            path = path.decode()
        return Path(path).resolve() == self.config_path

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory or not self._matches(event.src_path):
            return
        self._schedule()

    def on_created(self, event: FileSystemEvent) -> None:
        if event.is_directory or not self._matches(event.src_path):
            return
        self._schedule()

    def on_moved(self, event: FileSystemEvent) -> None:
        # 编辑器原子保存：写临时文件后重命名为目标文件
        if event.is_directory or not self._matches(event.dest_path):
            return
        self._schedule()

    def _schedule(self) -> None:
        try:
            current_modified = self.config_path.stat().st_mtime
        except OSError:
            return

        with self._lock:
            if current_modified == self._last_modified:
                return
            self._last_modified = current_modified

            logger.info(f"配置文件已修改: {self.config_path}")
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce_seconds, self._execute_callback)
            self._timer.daemon = True
            self._timer.start()

    def _execute_callback(self) -> None:
        try:
            self.callback()
        except Exception as e:
            logger.error(f"配置重载回调执行失败: {e}")

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


class ConfigWatcher:
    """配置文件监听器

    文件变化时先校验JSON与配置结构，校验通过后依次执行已注册的重载回调。
    回调在主事件循环中执行。
    """

    def __init__(self, config_path: str | None = None):
        self.config_path = Path(config_path or get_config_file_path()).resolve()
        self.observer: Observer | None = None
        self.handler: ConfigFileHandler | None = None
        self._reload_callbacks: list[Callable[[], Any]] = []
        self._loop: asyncio.AbstractEventLoop | None = None

    def add_reload_callback(self, callback: Callable[[], Any]) -> None:
        """添加配置重载回调函数，支持同步与异步函数"""
        self._reload_callbacks.append(callback)

    @property
    def is_watching(self) -> bool:
        return self.observer is not None

    async def start_watching(self) -> None:
        """开始监听配置文件变化"""
        if self.observer is not None:
            logger.warning("配置监听器已在运行")
            return

        if not self.config_path.exists():
            logger.warning(f"配置文件不存在，跳过监听: {self.config_path}")
            return

        self._loop = asyncio.get_running_loop()
        self.handler = ConfigFileHandler(self.config_path, self._on_config_changed)
        self.observer = Observer()
        self.observer.schedule(self.handler, str(self.config_path.parent), recursive=False)
        self.observer.start()

        logger.info(f"开始监听配置文件: {self.config_path}")

    def stop_watching(self) -> None:
        """停止监听配置文件变化"""
        if self.observer is None:
            return

        logger.info("停止配置文件监听")
        if self.handler is not None:
            self.handler.cancel()
        self.observer.stop()
        self.observer.join()
        self.observer = None
        self.handler = None

    def _on_config_changed(self) -> None:
        """watchdog线程中触发，把处理逻辑交回主事件循环"""
        logger.info("检测到配置文件变化，开始重新加载...")
        if self._loop is None or self._loop.is_closed():
            logger.error("事件循环不可用，跳过配置重载")
            return
        asyncio.run_coroutine_threadsafe(self.process_config_change(), self._loop)

    async def process_config_change(self) -> bool:
        """校验配置文件并执行重载回调，返回是否执行了重载"""
        if not await self.validate_config_file():
            logger.error("配置文件无效，保留当前配置")
            return False

        for callback in self._reload_callbacks:
            name = getattr(callback, "__name__", repr(callback))
            try:
                if inspect.iscoroutinefunction(callback):
                    await callback()
                else:
                    callback()
                logger.debug(f"配置重载回调执行成功: {name}")
            except Exception as e:
                logger.error(f"配置重载回调执行失败 {name}: {e}")

        logger.info("配置重载完成")
        return True

    async def validate_config_file(self) -> bool:
        """验证配置文件是合法JSON并且符合配置结构"""
        try:
            async with aiofiles.open(self.config_path, encoding="utf-8") as f:
                content = await f.read()
            Config.model_validate(apply_env_overrides(json.loads(content)))
            return True
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"配置文件读取失败: {e}")
            return False
        except ValidationError as e:
            logger.error(f"配置文件结构校验失败: {e.error_count()} 个错误")
            return False
