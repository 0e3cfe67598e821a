"""Realtime chat core: connections, presence, room routing, delivery and typing."""
