"""OpenClaw 命令行通知"""

from agent_bridge.channels.openclaw.notifier import OpenClawNotifier

__all__ = ["OpenClawNotifier"]
