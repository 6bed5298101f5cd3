"""
ProgressReporter 单元测试

- FlushThrottle 状态机（纯逻辑，显式时间）
- ProgressReporter 的历史、渲染、尾沿刷新与清理（FakeChannel）
"""

import asyncio

import pytest

from agent_bridge.services.progress_reporter import (
    FlushThrottle,
    ProgressReporter,
    ThrottleAction,
    ThrottleState,
    TOOL_LABELS,
)
from conftest import FakeChannel


# ==================== 节流状态机测试 ====================

class TestFlushThrottle:
    """尾沿节流状态机"""

    def test_first_report_flushes_immediately(self):
        throttle = FlushThrottle(3.0)
        assert throttle.state == ThrottleState.IDLE
        decision = throttle.on_report("執行命令", now=100.0)
        assert decision.action == ThrottleAction.FLUSH_NOW

        throttle.mark_flushed(100.0)
        assert throttle.state == ThrottleState.FLUSHED
        assert throttle.last_flush_at == 100.0

    def test_report_within_window_schedules_remaining_interval(self):
        throttle = FlushThrottle(3.0)
        throttle.mark_flushed(100.0)

        decision = throttle.on_report("讀取檔案", now=101.0)
        assert decision.action == ThrottleAction.SCHEDULE
        assert decision.delay == pytest.approx(2.0)
        assert throttle.state == ThrottleState.PENDING
        assert throttle.pending_label == "讀取檔案"

        throttle.mark_scheduled()
        assert throttle.state == ThrottleState.SCHEDULED

    def test_reports_while_scheduled_coalesce(self):
        throttle = FlushThrottle(3.0)
        throttle.mark_flushed(100.0)
        throttle.on_report("讀取檔案", now=101.0)
        throttle.mark_scheduled()

        decision = throttle.on_report("搜尋內容", now=102.0)
        assert decision.action == ThrottleAction.COALESCE
        assert throttle.pending_label == "搜尋內容"
        assert throttle.state == ThrottleState.SCHEDULED

    def test_timer_flushes_pending(self):
        throttle = FlushThrottle(3.0)
        throttle.mark_flushed(100.0)
        throttle.on_report("讀取檔案", now=101.0)
        throttle.mark_scheduled()

        decision = throttle.on_timer(now=103.0)
        assert decision.action == ThrottleAction.FLUSH_NOW
        throttle.mark_flushed(103.0)
        assert throttle.pending_label is None
        assert throttle.state == ThrottleState.FLUSHED

    def test_timer_without_schedule_ignored(self):
        throttle = FlushThrottle(3.0)
        assert throttle.on_timer(now=5.0).action == ThrottleAction.IGNORE

    def test_report_after_window_flushes(self):
        throttle = FlushThrottle(3.0)
        throttle.mark_flushed(100.0)
        assert throttle.on_report("x", now=103.0).action == ThrottleAction.FLUSH_NOW

    def test_terminated_ignores_everything(self):
        throttle = FlushThrottle(3.0)
        throttle.mark_flushed(100.0)
        throttle.on_report("x", now=101.0)
        throttle.mark_scheduled()
        throttle.terminate()

        assert throttle.on_report("y", now=200.0).action == ThrottleAction.IGNORE
        assert throttle.on_timer(now=200.0).action == ThrottleAction.IGNORE
        assert throttle.pending_label is None

    def test_flush_spacing_never_below_interval(self):
        """模拟连续上报：两次刷新的间隔不小于 min_interval"""
        throttle = FlushThrottle(3.0)
        flushes = []
        timer_at = None
        now = 0.0
        while now < 20.0:
            if timer_at is not None and now >= timer_at:
                if throttle.on_timer(now).action == ThrottleAction.FLUSH_NOW:
                    throttle.mark_flushed(now)
                    flushes.append(now)
                timer_at = None
            decision = throttle.on_report(f"label-{now}", now)
            if decision.action == ThrottleAction.FLUSH_NOW:
                throttle.mark_flushed(now)
                flushes.append(now)
            elif decision.action == ThrottleAction.SCHEDULE:
                timer_at = now + decision.delay
                throttle.mark_scheduled()
            now = round(now + 0.5, 2)

        assert len(flushes) >= 6
        gaps = [b - a for a, b in zip(flushes, flushes[1:])]
        assert all(gap >= 3.0 - 1e-9 for gap in gaps)


# ==================== 历史与渲染测试 ====================

class TestHistoryAndRendering:
    """进度历史与文本渲染"""

    @pytest.mark.asyncio
    async def test_history_limit_and_no_consecutive_duplicates(self):
        channel = FakeChannel()
        reporter = ProgressReporter(channel, "chat-1", min_interval=60.0)

        tools = ["Bash", "Bash", "Read", "Read", "Grep", "Bash", "WebSearch",
                 "WebSearch", "Edit", "Write", "Glob", "TodoWrite", "TodoWrite"]
        for tool in tools:
            reporter.report(tool)
            assert len(reporter.history) <= 6
            assert all(a != b for a, b in zip(reporter.history, reporter.history[1:]))

        assert reporter.history == ["執行命令", "搜尋網頁", "編輯檔案", "寫入檔案", "搜尋檔案", "更新待辦"]
        await reporter.cleanup()

    @pytest.mark.asyncio
    async def test_same_tool_repeated(self):
        reporter = ProgressReporter(FakeChannel(), "chat-1", min_interval=60.0)
        for _ in range(10):
            reporter.report("Bash")
        assert reporter.history == ["執行命令"]
        await reporter.cleanup()

    def test_label_mapping(self):
        assert ProgressReporter.label_for("WebFetch") == TOOL_LABELS["WebFetch"] == "讀取網頁"
        assert ProgressReporter.label_for("mcp__custom__tool") == "mcp__custom__tool"

    def test_render_empty(self):
        reporter = ProgressReporter(FakeChannel(), "chat-1")
        assert reporter.render_text() == "⏳ 處理中..."

    def test_render_history(self):
        reporter = ProgressReporter(FakeChannel(), "chat-1")
        reporter.history = ["搜尋網頁", "執行命令", "讀取檔案"]
        assert reporter.render_text() == "⏳ 搜尋網頁...\n     執行命令...\n     讀取檔案..."


# ==================== 刷新与清理测试 ====================

class TestDelivery:
    """发送、编辑、删除"""

    @pytest.mark.asyncio
    async def test_first_report_sends_message(self):
        channel = FakeChannel()
        reporter = ProgressReporter(channel, "chat-1", min_interval=0.2)

        reporter.report("Bash")
        await asyncio.sleep(0.05)

        assert channel.names() == ["send"]
        assert channel.calls[0][2]["content"] == "⏳ 執行命令..."
        assert reporter.message_id == channel.calls[0][2]["message_id"]
        await reporter.cleanup()

    @pytest.mark.asyncio
    async def test_trailing_flush_coalesces(self):
        """窗口内的多次上报合并为一次编辑"""
        channel = FakeChannel()
        reporter = ProgressReporter(channel, "chat-1", min_interval=0.2)

        reporter.report("Bash")
        reporter.report("Read")
        reporter.report("Grep")
        await asyncio.sleep(0.4)

        assert channel.names() == ["send", "edit"]
        edit = channel.calls[1]
        assert "搜尋內容" in edit[2]["content"]
        assert edit[2]["message_id"] == reporter.message_id
        assert edit[1] - channel.calls[0][1] >= 0.15

        # 没有新的上报就不会再刷新
        await asyncio.sleep(0.3)
        assert channel.names() == ["send", "edit"]
        await reporter.cleanup()

    @pytest.mark.asyncio
    async def test_flush_spacing_with_real_timers(self):
        channel = FakeChannel()
        reporter = ProgressReporter(channel, "chat-1", min_interval=0.1)

        tools = ["Bash", "Read"]
        for i in range(15):
            reporter.report(tools[i % 2])
            await asyncio.sleep(0.03)
        await asyncio.sleep(0.2)

        stamps = [ts for name, ts, _ in channel.calls if name in ("send", "edit")]
        assert len(stamps) >= 3
        gaps = [b - a for a, b in zip(stamps, stamps[1:])]
        assert all(gap >= 0.09 for gap in gaps)
        await reporter.cleanup()

    @pytest.mark.asyncio
    async def test_cleanup_deletes_once(self):
        channel = FakeChannel()
        reporter = ProgressReporter(channel, "chat-1", min_interval=0.2)
        reporter.report("Bash")
        await asyncio.sleep(0.05)

        await reporter.cleanup()
        await reporter.cleanup()

        assert channel.names() == ["send", "delete"]
        assert reporter.terminated

        # 终止后上报无效
        reporter.report("Read")
        await asyncio.sleep(0.05)
        assert channel.names() == ["send", "delete"]

    @pytest.mark.asyncio
    async def test_cleanup_cancels_pending_timer(self):
        channel = FakeChannel()
        reporter = ProgressReporter(channel, "chat-1", min_interval=0.2)
        reporter.report("Bash")
        reporter.report("Read")
        await asyncio.sleep(0.05)

        await reporter.cleanup()
        await asyncio.sleep(0.3)

        assert channel.names() == ["send", "delete"]

    @pytest.mark.asyncio
    async def test_cleanup_waits_for_in_flight_send(self):
        """发送尚未返回时清理，仍会删除刚创建的消息"""
        channel = FakeChannel(send_delay=0.1)
        reporter = ProgressReporter(channel, "chat-1", min_interval=0.2)

        reporter.report("Bash")
        await asyncio.sleep(0)
        await reporter.cleanup()

        assert channel.names() == ["send", "delete"]
        assert channel.calls[1][2]["message_id"] == channel.calls[0][2]["message_id"]

    @pytest.mark.asyncio
    async def test_cleanup_without_message(self):
        channel = FakeChannel()
        reporter = ProgressReporter(channel, "chat-1")
        await reporter.cleanup()
        assert channel.calls == []

    @pytest.mark.asyncio
    async def test_channel_errors_swallowed(self):
        channel = FakeChannel(fail_with=RuntimeError("network down"))
        reporter = ProgressReporter(channel, "chat-1", min_interval=0.2)

        reporter.report("Bash")
        await asyncio.sleep(0.05)
        await reporter.cleanup()

        assert reporter.message_id is None
        assert channel.calls == []


# ==================== 禁用测试 ====================

class TestDisabled:
    """未配置目标或渠道时禁用"""

    @pytest.mark.asyncio
    async def test_no_target(self):
        channel = FakeChannel()
        reporter = ProgressReporter(channel, None)
        assert not reporter.enabled
        reporter.report("Bash")
        await asyncio.sleep(0.02)
        await reporter.cleanup()
        assert channel.calls == []
        assert reporter.history == []

    @pytest.mark.asyncio
    async def test_channel_not_configured(self):
        channel = FakeChannel(configured=False)
        reporter = ProgressReporter(channel, "chat-1")
        assert not reporter.enabled
        reporter.report("Bash")
        await reporter.cleanup()
        assert channel.calls == []

    @pytest.mark.asyncio
    async def test_no_channel(self):
        reporter = ProgressReporter(None, None)
        reporter.report("Bash")
        await reporter.cleanup()
        assert reporter.terminated
