#!/usr/bin/env python3
"""
Model Proxy 启动脚本

使用 JSON 配置文件中的 host 和 port 启动服务器，而不是命令行参数。
配置优先级：
1. 命令行指定的 --config 参数
2. 环境变量 CONFIG_PATH 指定的路径
3. ./config/settings.json (默认)

参考 ./config/example.json 编写配置文件。
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

import uvicorn

from model_proxy.config.settings import DEFAULT_CONFIG_PATH, Config

_UVICORN_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "TRACE"}


def _uvicorn_log_level(level: str) -> str:
    return level.lower() if level in _UVICORN_LEVELS else "info"


async def main():
    """主启动函数"""
    parser = argparse.ArgumentParser(description="启动 Model Proxy")
    parser.add_argument(
        "--config", type=str, help=f"JSON 配置文件路径 (默认为 {DEFAULT_CONFIG_PATH})"
    )
    args = parser.parse_args()

    # 确保从项目根目录启动
    project_root = Path(__file__).parent
    os.chdir(project_root)

    # 确定配置文件路径，应用内部通过 CONFIG_PATH 读取
    config_path = args.config or os.getenv("CONFIG_PATH", DEFAULT_CONFIG_PATH)
    os.environ["CONFIG_PATH"] = config_path

    try:
        config = await Config.from_file(config_path)
        host, port = await config.get_server_config()

        print("🚀 启动 Model Proxy Server...")
        print(f"   配置文件: {config_path}")
        print(f"   监听地址: {host}:{port}")
        print()
        print("📋 重要端点:")
        print(f"   消息接口: http://{host}:{port}/v1/messages")
        print(f"   健康检查: http://{host}:{port}/health")
        print(f"   API文档: http://{host}:{port}/docs")
        print()
    except Exception as e:
        print(f"❌ 启动失败: {e}")
        sys.exit(1)

    # 速率令牌桶是进程级状态，只使用单个worker
    config_server = uvicorn.Config(
        "model_proxy.main:create_app",
        factory=True,
        host=host,
        port=port,
        timeout_keep_alive=60,
        log_level=_uvicorn_log_level(config.logging.level),
    )
    await uvicorn.Server(config_server).serve()


if __name__ == "__main__":
    asyncio.run(main())
