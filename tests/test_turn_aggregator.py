"""
TurnAggregator 单元测试

只有最后一轮（最后一个 message_start 之后）的增量会成为回答
"""

from agent_bridge.models.stream_event import StreamEvent
from agent_bridge.services.turn_aggregator import DEFAULT_MODEL_NAME, TurnAggregator


def run(events):
    aggregator = TurnAggregator()
    result = None
    for event in events:
        out = aggregator.feed(event)
        if out is not None:
            result = out
    return aggregator, result


# ==================== 轮次切分测试 ====================

class TestTurnSegmentation:
    """轮次切分"""

    def test_only_final_turn_survives(self):
        """[start, A, start, B, result] → 只返回 B"""
        _, result = run([
            StreamEvent.message_start(),
            StreamEvent.delta("A"),
            StreamEvent.message_start(),
            StreamEvent.delta("B"),
            StreamEvent.result(text="A and B"),
        ])
        assert result.content == "B"
        assert result.fragments == ["B"]
        assert result.turn_count == 2

    def test_many_turns(self):
        """N 个 message_start：只保留第 N 个之后的增量"""
        events = []
        for i in range(5):
            events.append(StreamEvent.message_start())
            events.append(StreamEvent.delta(f"turn{i}-a "))
            events.append(StreamEvent.delta(f"turn{i}-b"))
        events.append(StreamEvent.result())

        _, result = run(events)
        assert result.fragments == ["turn4-a ", "turn4-b"]
        assert result.turn_count == 5

    def test_fragments_preserved_for_replay(self):
        _, result = run([
            StreamEvent.message_start(),
            StreamEvent.delta("Hel"),
            StreamEvent.delta("lo"),
            StreamEvent.result(),
        ])
        assert result.fragments == ["Hel", "lo"]
        assert result.content == "Hello"

    def test_empty_final_turn(self):
        """最后一轮没有增量 → 空内容，不是错误"""
        _, result = run([
            StreamEvent.message_start(),
            StreamEvent.delta("thinking about tools"),
            StreamEvent.message_start(),
            StreamEvent.result(text="ignored"),
        ])
        assert result is not None
        assert result.content == ""

    def test_tool_events_do_not_affect_buffer(self):
        _, result = run([
            StreamEvent.message_start(),
            StreamEvent.content_block_start("Bash"),
            StreamEvent.delta("answer"),
            StreamEvent.content_block_start(None),
            StreamEvent.result(),
        ])
        assert result.content == "answer"


# ==================== 零轮次测试 ====================

class TestZeroTurns:
    """没有任何 message_start 的 result"""

    def test_result_text_used_when_no_deltas(self):
        _, result = run([StreamEvent.result(text="plain answer")])
        assert result.content == "plain answer"
        assert result.turn_count == 0

    def test_deltas_used_when_present(self):
        _, result = run([StreamEvent.delta("x"), StreamEvent.result(text="y")])
        assert result.content == "x"

    def test_empty_result(self):
        _, result = run([StreamEvent.result()])
        assert result.content == ""


# ==================== 模型与用量测试 ====================

class TestModelAndUsage:
    """模型名与 token 用量"""

    def test_model_from_assistant(self):
        _, result = run([
            StreamEvent.message_start(),
            StreamEvent.assistant("claude-opus-4-1"),
            StreamEvent.result(model_usage=("claude-haiku-4-5",)),
        ])
        assert result.model == "claude-opus-4-1"

    def test_model_from_model_usage(self):
        _, result = run([StreamEvent.result(model_usage=("claude-haiku-4-5", "claude-sonnet-4"))])
        assert result.model == "claude-haiku-4-5"

    def test_default_model(self):
        _, result = run([StreamEvent.result()])
        assert result.model == DEFAULT_MODEL_NAME

    def test_usage(self):
        _, result = run([StreamEvent.result(input_tokens=7, output_tokens=3)])
        assert result.prompt_tokens == 7
        assert result.completion_tokens == 3

    def test_events_after_result_ignored(self):
        aggregator, result = run([
            StreamEvent.message_start(),
            StreamEvent.delta("done"),
            StreamEvent.result(),
            StreamEvent.message_start(),
            StreamEvent.delta("late"),
        ])
        assert aggregator.completed
        assert aggregator.feed(StreamEvent.result()) is None
        assert aggregator.result.content == "done"
