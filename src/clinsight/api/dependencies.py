"""Request-scoped access to the service graph built at startup."""

from fastapi import HTTPException, Request, status

from clinsight.analytics.service import ClinicalAnalyticsService
from clinsight.db.clients import ServiceClients


def get_analytics_service(request: Request) -> ClinicalAnalyticsService:
    service = getattr(request.app.state, "analytics_service", None)
    if service is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service not initialized")
    return service


def get_service_clients(request: Request) -> ServiceClients | None:
    return getattr(request.app.state, "clients", None)
