"""
会话存储后端单元测试

- ConversationSession 序列化（毫秒时间戳、camelCase 字段）
- JsonFileSessionStorage 读写与损坏数据处理
- RedisSessionStorage（mock redis 客户端）
"""

import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from agent_bridge.storage.base import ConversationSession
from agent_bridge.storage.json_storage import JsonFileSessionStorage
from agent_bridge.storage.redis_storage import RedisSessionStorage


# ==================== ConversationSession 测试 ====================

class TestConversationSession:
    """会话记录"""

    def test_to_dict_uses_milliseconds(self):
        session = ConversationSession(
            conversation_id="c1",
            claude_session_id="sid-1",
            created_at=1700000000.5,
            last_used_at=1700000100.25,
            model="opus",
            message_count=3,
        )
        assert session.to_dict() == {
            "conversationId": "c1",
            "claudeSessionId": "sid-1",
            "createdAt": 1700000000500,
            "lastUsedAt": 1700000100250,
            "model": "opus",
            "messageCount": 3,
        }

    def test_from_dict(self):
        session = ConversationSession.from_dict("c1", {
            "conversationId": "c1",
            "claudeSessionId": "sid-1",
            "createdAt": 1700000000000,
            "lastUsedAt": 1700000060000,
            "model": "haiku",
            "messageCount": 2,
        })
        assert session.created_at == 1700000000.0
        assert session.last_used_at == 1700000060.0
        assert session.model == "haiku"
        assert session.message_count == 2

    def test_from_dict_requires_session_id(self):
        with pytest.raises(ValueError):
            ConversationSession.from_dict("c1", {"model": "sonnet"})

    def test_is_expired(self):
        session = ConversationSession("c1", "sid", created_at=0, last_used_at=1000)
        assert not session.is_expired(100, now=1100)
        assert session.is_expired(100, now=1100.5)

    def test_touch_never_goes_back(self):
        session = ConversationSession("c1", "sid", created_at=0, last_used_at=1000)
        session.touch(900)
        assert session.last_used_at == 1000
        session.touch(1200)
        assert session.last_used_at == 1200


# ==================== JSON 文件存储测试 ====================

class TestJsonFileSessionStorage:
    """JSON 文件存储"""

    @pytest.mark.asyncio
    async def test_round_trip_document_shape(self, tmp_path):
        path = tmp_path / "nested" / "sessions.json"
        storage = JsonFileSessionStorage(path)
        sessions = {
            "c1": ConversationSession("c1", "sid-1", created_at=1.0, last_used_at=2.0),
            "c2": ConversationSession("c2", "sid-2", created_at=3.0, last_used_at=4.0, model="opus"),
        }

        await storage.save_all(sessions)

        data = json.loads(path.read_text(encoding="utf-8"))
        assert set(data.keys()) == {"c1", "c2"}
        assert data["c2"]["claudeSessionId"] == "sid-2"
        assert data["c2"]["lastUsedAt"] == 4000
        assert not (tmp_path / "nested" / "sessions.json.tmp").exists()

        loaded = await storage.load_all()
        assert loaded["c2"].model == "opus"
        assert loaded["c1"].claude_session_id == "sid-1"

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        storage = JsonFileSessionStorage(tmp_path / "none.json")
        assert await storage.load_all() == {}

    @pytest.mark.asyncio
    async def test_invalid_json_raises(self, tmp_path):
        path = tmp_path / "sessions.json"
        path.write_text("{oops", encoding="utf-8")
        with pytest.raises(ValueError):
            await JsonFileSessionStorage(path).load_all()

    @pytest.mark.asyncio
    async def test_non_object_top_level_raises(self, tmp_path):
        path = tmp_path / "sessions.json"
        path.write_text("[1, 2, 3]", encoding="utf-8")
        with pytest.raises(ValueError):
            await JsonFileSessionStorage(path).load_all()

    @pytest.mark.asyncio
    async def test_bad_entries_skipped(self, tmp_path):
        path = tmp_path / "sessions.json"
        path.write_text(json.dumps({
            "good": {"claudeSessionId": "sid-good", "lastUsedAt": 1000},
            "no-sid": {"model": "sonnet"},
            "not-a-dict": "oops",
        }), encoding="utf-8")

        loaded = await JsonFileSessionStorage(path).load_all()
        assert list(loaded.keys()) == ["good"]

    @pytest.mark.asyncio
    async def test_save_rewrites_wholesale(self, tmp_path):
        path = tmp_path / "sessions.json"
        storage = JsonFileSessionStorage(path)
        await storage.save_all({"a": ConversationSession("a", "sid-a")})
        await storage.save_all({"b": ConversationSession("b", "sid-b")})

        data = json.loads(path.read_text(encoding="utf-8"))
        assert list(data.keys()) == ["b"]


# ==================== Redis 存储测试 ====================

class TestRedisSessionStorage:
    """Redis 存储（mock 客户端）"""

    @pytest.mark.asyncio
    async def test_load_all(self):
        storage = RedisSessionStorage(key="test:sessions")
        storage.redis = MagicMock()
        storage.redis.hgetall = AsyncMock(return_value={
            "c1": json.dumps({"claudeSessionId": "sid-1", "lastUsedAt": 5000}),
            "bad": "{nope",
        })
        storage._connected = True

        loaded = await storage.load_all()

        storage.redis.hgetall.assert_awaited_once_with("test:sessions")
        assert list(loaded.keys()) == ["c1"]
        assert loaded["c1"].last_used_at == 5.0

    @pytest.mark.asyncio
    async def test_save_all_rewrites_hash(self):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[1, 1])
        pipe.__aenter__ = AsyncMock(return_value=pipe)
        pipe.__aexit__ = AsyncMock(return_value=None)

        storage = RedisSessionStorage(key="test:sessions")
        storage.redis = MagicMock()
        storage.redis.pipeline = MagicMock(return_value=pipe)
        storage._connected = True

        await storage.save_all({"c1": ConversationSession("c1", "sid-1")})

        pipe.delete.assert_called_once_with("test:sessions")
        args, kwargs = pipe.hset.call_args
        assert args[0] == "test:sessions"
        assert json.loads(kwargs["mapping"]["c1"])["claudeSessionId"] == "sid-1"
        pipe.execute.assert_awaited_once()
