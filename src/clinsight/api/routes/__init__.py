"""
Clinsight API Routes

All API route modules.
"""

from clinsight.api.routes.analytics import router as analytics_router
from clinsight.api.routes.records import router as records_router

__all__ = [
    "analytics_router",
    "records_router",
]
