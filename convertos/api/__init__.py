from convertos.api.webhooks import router as webhooks_router
from convertos.api.connections import router as connections_router
from convertos.api.agent import router as agent_router

__all__ = [
    "webhooks_router",
    "connections_router",
    "agent_router",
]
