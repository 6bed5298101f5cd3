"""
JSON File Storage - 基于本地 JSON 文件的会话存储
整个映射写成一个 JSON 对象，每次保存整体重写（先写临时文件再原子替换）
"""

import json
import logging
from pathlib import Path
from typing import Dict, Union

import aiofiles
import aiofiles.os

from .base import SessionStorage, ConversationSession

logger = logging.getLogger(__name__)


class JsonFileSessionStorage(SessionStorage):
    """
    基于 JSON 文件的会话存储

    文件格式：
        {
          "<conversationId>": {"conversationId": ..., "claudeSessionId": ..., ...},
          ...
        }
    """

    def __init__(self, path: Union[str, Path]):
        """
        初始化文件存储

        Args:
            path: 会话文件路径
        """
        self.path = Path(path).expanduser()
        logger.info(f"初始化 JsonFileSessionStorage: {self.path}")

    async def load_all(self) -> Dict[str, ConversationSession]:
        """读取会话文件（文件不存在时返回空映射）"""
        if not self.path.exists():
            logger.info(f"会话文件不存在，从空映射开始: {self.path}")
            return {}

        async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
            raw = await f.read()

        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError(f"会话文件格式错误（顶层不是对象）: {self.path}")

        sessions: Dict[str, ConversationSession] = {}
        for conversation_id, item in data.items():
            if not isinstance(item, dict):
                logger.warning(f"跳过损坏的会话记录: {conversation_id}")
                continue
            try:
                sessions[conversation_id] = ConversationSession.from_dict(conversation_id, item)
            except (TypeError, ValueError) as e:
                logger.warning(f"跳过损坏的会话记录 {conversation_id}: {e}")

        return sessions

    async def save_all(self, sessions: Dict[str, ConversationSession]) -> None:
        """整体重写会话文件"""
        payload = {
            conversation_id: session.to_dict()
            for conversation_id, session in sessions.items()
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")

        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(payload, ensure_ascii=False, indent=2))

        await aiofiles.os.replace(tmp_path, self.path)
        logger.debug(f"已保存 {len(payload)} 个会话到 {self.path}")

    async def close(self) -> None:
        """文件存储无需关闭"""
        return None
