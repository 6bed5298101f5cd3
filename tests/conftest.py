"""
测试公共夹具

- FakeChannel: 记录发送/编辑/删除调用的渠道适配器
- MemoryStorage: 内存会话存储
- fake_cli: 生成可执行的假 CLI 脚本（逐行输出 stream-json）
"""

import asyncio
import os
import sys
import textwrap
import time
from typing import Dict, List, Optional, Tuple

import pytest

# 添加项目根目录到 path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from agent_bridge.channels.base import BaseChannelAdapter, ChannelResponse, ChannelType
from agent_bridge.storage.base import ConversationSession, SessionStorage


class FakeChannel(BaseChannelAdapter):
    """记录所有调用（附带单调时钟时间戳）"""

    def __init__(self, configured: bool = True, send_delay: float = 0.0, fail_with: Optional[Exception] = None):
        super().__init__(ChannelType.TELEGRAM)
        self.configured = configured
        self.send_delay = send_delay
        self.fail_with = fail_with
        self.calls: List[Tuple[str, float, Dict]] = []
        self._next_id = 100

    def is_configured(self) -> bool:
        return self.configured

    def _record(self, name: str, **kwargs) -> None:
        self.calls.append((name, time.monotonic(), kwargs))

    def names(self) -> List[str]:
        return [name for name, _, _ in self.calls]

    async def send_message(self, target: str, content: str, **kwargs) -> ChannelResponse:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.fail_with is not None:
            raise self.fail_with
        self._next_id += 1
        self._record("send", target=target, content=content, message_id=str(self._next_id))
        return ChannelResponse(success=True, message_id=str(self._next_id))

    async def edit_message(self, target: str, message_id: str, content: str) -> ChannelResponse:
        self._record("edit", target=target, content=content, message_id=message_id)
        return ChannelResponse(success=True, message_id=message_id)

    async def delete_message(self, target: str, message_id: str) -> ChannelResponse:
        self._record("delete", target=target, message_id=message_id)
        return ChannelResponse(success=True, message_id=message_id)


class MemoryStorage(SessionStorage):
    """内存会话存储（记录每次保存的快照）"""

    def __init__(self, initial: Optional[Dict[str, ConversationSession]] = None):
        self.initial = dict(initial or {})
        self.snapshots: List[Dict[str, ConversationSession]] = []
        self.closed = False

    async def load_all(self) -> Dict[str, ConversationSession]:
        return dict(self.initial)

    async def save_all(self, sessions: Dict[str, ConversationSession]) -> None:
        self.snapshots.append(dict(sessions))

    async def close(self) -> None:
        self.closed = True


FAKE_CLI_HEADER = f"""#!{sys.executable}
import json
import sys
import time

PROMPT = sys.stdin.read()
ARGS = sys.argv[1:]


def emit(obj):
    sys.stdout.write(json.dumps(obj) + "\\n")
    sys.stdout.flush()


def stream(event):
    emit({{"type": "stream_event", "event": event}})


def delta(text):
    stream({{"type": "content_block_delta", "index": 0, "delta": {{"type": "text_delta", "text": text}}}})

"""


@pytest.fixture
def fake_cli(tmp_path):
    """
    生成假 CLI 脚本

    用法:
        path = fake_cli('''
            stream({"type": "message_start"})
            delta("Hi")
        ''')
    """
    counter = {"n": 0}

    def make(body: str) -> str:
        counter["n"] += 1
        path = tmp_path / f"fake-cli-{counter['n']}"
        path.write_text(FAKE_CLI_HEADER + textwrap.dedent(body), encoding="utf-8")
        path.chmod(0o755)
        return str(path)

    return make
