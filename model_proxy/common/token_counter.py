import json

import tiktoken

from model_proxy.models.messages import (
    ImageBlock,
    Message,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolSpec,
    ToolUseBlock,
)

ENCODING_NAME = "o200k_base"


class TokenCounter:
    """基于 tiktoken 的精确token计数器，用于 count_tokens 接口

    编码器在首次使用时才加载。
    """

    def __init__(self, encoding_name: str = ENCODING_NAME, encoder=None):
        self.encoding_name = encoding_name
        self._encoder = encoder

    @property
    def encoder(self):
        if self._encoder is None:
            self._encoder = tiktoken.get_encoding(self.encoding_name)
        return self._encoder

    @staticmethod
    def _block_texts(block) -> list[str]:
        if isinstance(block, TextBlock):
            return [block.text] if block.text else []
        if isinstance(block, ThinkingBlock):
            return [block.thinking] if block.thinking else []
        if isinstance(block, ToolUseBlock):
            texts = [block.name]
            if block.input:
                texts.append(json.dumps(block.input, ensure_ascii=False))
            return texts
        if isinstance(block, ToolResultBlock):
            content = block.content_text()
            return [content] if content else []
        if isinstance(block, ImageBlock):
            # 图像按占位符计数，不计入二进制数据
            return ["[image]"]
        return []

    def count_tokens(
        self,
        messages: list[Message] | None = None,
        system: str | None = None,
        tools: list[ToolSpec] | None = None,
    ) -> int:
        """计算完整请求的token总数"""
        text_parts: list[str] = []

        for message in messages or []:
            for block in message.content:
                text_parts.extend(self._block_texts(block))

        if system:
            text_parts.append(system)

        for tool in tools or []:
            text_parts.append(tool.name)
            if tool.description:
                text_parts.append(tool.description)
            if tool.input_schema:
                text_parts.append(json.dumps(tool.input_schema, ensure_ascii=False))

        combined_text = "".join(text_parts)
        return len(self.encoder.encode(combined_text))


# 全局实例
token_counter = TokenCounter()
