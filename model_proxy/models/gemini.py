"""Google Gemini generateContent 数据模型定义

字段名使用 Gemini REST 接口的 camelCase 形式，序列化时需 by_alias=False 直接输出。
"""

from typing import Any, Literal

from pydantic import BaseModel, Field


class GeminiInlineData(BaseModel):
    """内联二进制数据"""

    mimeType: str = Field(description="MIME类型")
    data: str = Field(description="base64编码数据")


class GeminiFunctionCall(BaseModel):
    """模型发起的函数调用"""

    name: str = Field(description="函数名称")
    args: dict[str, Any] = Field(default_factory=dict, description="函数参数")


class GeminiFunctionResponse(BaseModel):
    """函数调用结果"""

    name: str = Field(description="函数名称")
    response: dict[str, Any] = Field(description="函数返回内容")


class GeminiPart(BaseModel):
    """内容片段，每个片段只设置一个字段"""

    text: str | None = Field(None, description="文本")
    inlineData: GeminiInlineData | None = Field(None, description="内联数据")
    functionCall: GeminiFunctionCall | None = Field(None, description="函数调用")
    functionResponse: GeminiFunctionResponse | None = Field(
        None, description="函数结果"
    )


class GeminiContent(BaseModel):
    """一轮对话内容"""

    role: Literal["user", "model"] | None = Field(None, description="角色")
    parts: list[GeminiPart] = Field(default_factory=list, description="内容片段")


class GeminiFunctionDeclaration(BaseModel):
    """函数声明"""

    name: str = Field(description="函数名称")
    description: str | None = Field(None, description="函数描述")
    parameters: dict[str, Any] | None = Field(None, description="OpenAPI风格参数定义")


class GeminiTool(BaseModel):
    """工具集合"""

    functionDeclarations: list[GeminiFunctionDeclaration] = Field(
        description="函数声明列表"
    )


class GeminiGenerationConfig(BaseModel):
    """生成参数"""

    maxOutputTokens: int | None = Field(None, description="最大输出token数量")
    temperature: float | None = Field(None, description="采样温度")
    topP: float | None = Field(None, description="top-p采样参数")
    stopSequences: list[str] | None = Field(None, description="停止序列")


class GeminiRequest(BaseModel):
    """generateContent 请求"""

    contents: list[GeminiContent] = Field(description="对话内容")
    systemInstruction: GeminiContent | None = Field(None, description="系统指令")
    tools: list[GeminiTool] | None = Field(None, description="工具定义")
    generationConfig: GeminiGenerationConfig | None = Field(
        None, description="生成参数"
    )


class GeminiCandidate(BaseModel):
    """候选回复"""

    content: GeminiContent | None = Field(None, description="回复内容")
    finishReason: str | None = Field(None, description="完成原因")
    index: int | None = Field(None, description="候选索引")


class GeminiUsageMetadata(BaseModel):
    """使用统计"""

    promptTokenCount: int | None = Field(0, description="提示token数量")
    candidatesTokenCount: int | None = Field(0, description="候选token数量")
    totalTokenCount: int | None = Field(0, description="总token数量")


class GeminiResponse(BaseModel):
    """generateContent 响应"""

    candidates: list[GeminiCandidate] = Field(
        default_factory=list, description="候选回复列表"
    )
    usageMetadata: GeminiUsageMetadata | None = Field(None, description="使用统计")
    modelVersion: str | None = Field(None, description="模型版本")
    responseId: str | None = Field(None, description="响应ID")
