"""
Streaming chat relay.

Relays OpenAI-compatible completions to clients as SSE, splitting inline
reasoning into its own channel, and ships the matching stream consumer.
"""

__version__ = "0.1.0"
