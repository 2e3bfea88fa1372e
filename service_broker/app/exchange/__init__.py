"""
Exchange orchestration: the gate sequence shared by both broker endpoints.
"""

from .orchestrator import TokenExchange, bearer_token, client_ip, retry_after_seconds

__all__ = [
    "TokenExchange",
    "bearer_token",
    "client_ip",
    "retry_after_seconds",
]
