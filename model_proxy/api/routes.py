"""健康检查路由"""

from datetime import datetime, timezone

from fastapi import APIRouter, Request

SERVICE_NAME = "model-proxy"

router = APIRouter()


@router.get("/health")
async def health_check(request: Request) -> dict:
    """服务状态与各服务商令牌桶余量"""
    handler = getattr(request.app.state, "messages_handler", None)
    providers = handler.context.limiter.all_status() if handler is not None else {}
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {"rate_limits": providers},
    }
