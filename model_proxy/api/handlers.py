"""消息接口处理器

- POST /v1/messages: 统一格式请求，经流水线转发到目标服务商
- POST /v1/messages/count_tokens: 使用 tiktoken 统计请求token数
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from model_proxy.common.logging import (
    get_logger_with_request_id,
    get_request_id_from_request,
)
from model_proxy.common.token_counter import TokenCounter
from model_proxy.config.settings import Config
from model_proxy.core.pipeline import ProxyContext, ProxyPipeline, ProxyResult
from model_proxy.core.transport import HttpTransport
from model_proxy.models.messages import UnifiedRequest

router = APIRouter()


class MessagesHandler:
    """持有进程级 ProxyContext 的消息处理器"""

    def __init__(self, context: ProxyContext, token_counter: TokenCounter | None = None):
        self.context = context
        self.pipeline = ProxyPipeline(context)
        self.token_counter = token_counter or TokenCounter()

    @classmethod
    def create(cls, config: Config, transport: HttpTransport | None = None) -> "MessagesHandler":
        return cls(ProxyContext.from_config(config, transport))

    async def process_message(
        self,
        request: UnifiedRequest,
        headers: dict[str, str],
        request_id: str | None = None,
    ) -> ProxyResult:
        return await self.pipeline.handle(request, headers, request_id)

    def count_tokens(self, request: UnifiedRequest) -> int:
        return self.token_counter.count_tokens(
            messages=request.messages,
            system=request.system_text() or None,
            tools=request.tools,
        )

    async def aclose(self) -> None:
        await self.context.transport.aclose()


def render_result(result: ProxyResult) -> Response:
    """把流水线结果渲染为FastAPI响应"""
    if result.is_stream:
        return StreamingResponse(
            result.body,
            status_code=result.status_code,
            media_type=result.media_type,
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                **result.headers,
            },
        )
    if isinstance(result.body, dict):
        return JSONResponse(
            content=result.body,
            status_code=result.status_code,
            headers=result.headers,
        )
    return Response(
        content=result.body,
        status_code=result.status_code,
        media_type=result.media_type,
        headers=result.headers,
    )


def get_messages_handler(request: Request) -> MessagesHandler:
    return request.app.state.messages_handler


@router.post("/v1/messages")
async def messages_endpoint(body: UnifiedRequest, request: Request) -> Response:
    """代理消息接口"""
    request_id = get_request_id_from_request(request)
    bound_logger = get_logger_with_request_id(request_id)
    bound_logger.debug(
        f"收到消息请求 - Model: {body.model or '<default>'}, "
        f"Messages: {len(body.messages)}, Stream: {body.stream}"
    )

    handler = get_messages_handler(request)
    result = await handler.process_message(body, dict(request.headers), request_id)
    return render_result(result)


@router.post("/v1/messages/count_tokens")
async def count_tokens_endpoint(body: UnifiedRequest, request: Request) -> dict:
    """统计请求的输入token数"""
    handler = get_messages_handler(request)
    return {"input_tokens": handler.count_tokens(body)}
