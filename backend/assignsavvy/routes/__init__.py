"""AssignSavvy Routes"""

from .credits import router as credits_router, plans_router
from .history import router as history_router
from .tools import router as tools_router
from .webhooks import router as webhooks_router

__all__ = [
    "credits_router",
    "plans_router",
    "history_router",
    "tools_router",
    "webhooks_router",
]
