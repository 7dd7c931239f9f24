"""
Agent orchestration runtime.

Import the pieces from their modules (``runtime.core.AgentRuntime``,
``runtime.loop.ConversationLoop``, ...); this package module stays empty so
``tools`` and ``runtime`` can import each other's leaf modules freely.
"""
