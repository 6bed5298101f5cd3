"""
OpenAI 兼容请求模型

只声明桥接层实际使用的字段，其余字段（temperature、tools 等）原样接收后忽略。
"""

from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, Field


class ChatMessage(BaseModel):
    """聊天消息"""
    role: str = Field(..., description="消息角色: system/developer/user/assistant/tool")
    content: Union[str, List[Dict[str, Any]], None] = Field(None, description="文本或内容片段列表")
    name: Optional[str] = Field(None, description="发送者名称")

    class Config:
        extra = "allow"

    def text(self) -> str:
        """
        提取消息纯文本

        Returns:
            字符串内容；内容片段列表只取 type=text 的部分并按换行拼接
        """
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        parts = []
        for part in self.content:
            if isinstance(part, dict) and part.get("type") == "text":
                text = part.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "\n".join(parts)


class ChatCompletionRequest(BaseModel):
    """POST /v1/chat/completions 请求体"""
    model: Optional[str] = Field(None, description="请求的模型名")
    messages: Optional[List[ChatMessage]] = Field(None, description="对话消息，必须非空")
    stream: bool = Field(False, description="是否使用 SSE 流式返回")
    user: Optional[str] = Field(None, description="外部会话 ID，用于跨请求复用 CLI 会话")

    class Config:
        extra = "allow"
