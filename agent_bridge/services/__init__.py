"""Request orchestration, CLI supervision and session services"""
