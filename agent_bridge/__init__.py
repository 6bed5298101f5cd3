"""
Agent Bridge - OpenAI-compatible API for a stream-json CLI agent
"""

__version__ = "1.0.0"
