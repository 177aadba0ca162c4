"""Real-time messaging core.

Services:
    - DispatchEngine: validates, persists, caches and fans out messages
    - PresenceSet: online users, converged across processes
    - MessageCache: recent-message cache with TTL
    - ConnectionManager: WebSocket sessions and chat broadcast groups
"""
