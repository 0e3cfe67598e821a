"""Palchat realtime messaging backend.

Modules:
    - chat: WebSocket connections, presence, typing, message delivery
    - store: DuckDB-backed rooms, memberships and message history
    - auth: credential verification for sockets and REST calls
"""
__version__ = "0.1.0"
