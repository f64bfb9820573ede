"""Conversation orchestration core.

Chunker, Key Lock Manager, Context Window Manager, Intent Detector,
Action Approval State Machine and the Orchestrator that sequences them.
Import from the submodules directly.
"""
