"""Session lifecycle layer for session-gateway.

- ``transport``: the interface the chat engine is plugged in through
- ``machine``: per-session state machine and command queue
- ``registry``: one machine per session id
"""
