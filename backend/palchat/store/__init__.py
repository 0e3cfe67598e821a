"""Persisted store for chat rooms, memberships and messages.

Services:
    - ChatStore: DuckDB storage (synchronous, lock-guarded).
    - StoreClient: async facade used by the realtime core.
"""
