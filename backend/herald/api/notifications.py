"""
Notification API routes.
"""
from typing import List
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse
from loguru import logger

from herald.schemas.health import CircuitHealth, DeliveryMetrics, PerformanceInsight, SystemHealth
from herald.schemas.notification import DeliveryResult, DeliveryStatus, SendRequest
from herald.schemas.preferences import NotificationPreferences
from herald.services.notification_service import NotificationService
from herald.utils.errors import ErrorCode, StoreUnavailableError, log_and_raise_500, raise_error

router = APIRouter(prefix="/api/notifications", tags=["notifications"])

# Rejected results surfaced as HTTP errors
_REJECTION_STATUS = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.QUEUE_FULL: 503,
    ErrorCode.STORE_UNAVAILABLE: 503,
    ErrorCode.TRANSPORT_ERROR: 502,
}


def get_notification_service(request: Request) -> NotificationService:
    """Dependency returning the service built during startup."""
    service = getattr(request.app.state, "notification_service", None)
    if service is None:
        raise_error(ErrorCode.SERVICE_UNAVAILABLE, "Notification service is not running", 503)
    return service


@router.post("/send", response_model=DeliveryResult)
async def send_notification(
    body: SendRequest,
    service: NotificationService = Depends(get_notification_service),
):
    """
    Send a notification.

    Returns the delivery result; queued and blocked notifications are not errors.
    Validation failures, a full queue and a global rate-limit rejection of a
    bypassed send are returned as 400, 503 and 429.
    """
    result = await service.send(body.user_id, body.payload, body.priority, body.options)
    if result.status == DeliveryStatus.REJECTED:
        status_code = _REJECTION_STATUS.get(result.error_code, 500)
        raise_error(result.error_code or ErrorCode.INTERNAL_ERROR, result.error or "Notification rejected", status_code, log=False)
    return result


@router.get("/health", response_model=SystemHealth)
async def get_health(service: NotificationService = Depends(get_notification_service)):
    """Queue, rate limiter, circuit breaker, metrics and memory health."""
    try:
        return await service.get_system_health()
    except StoreUnavailableError as e:
        raise_error(ErrorCode.STORE_UNAVAILABLE, f"Backing store unavailable: {e}", 503)


@router.get("/metrics", response_model=DeliveryMetrics)
async def get_metrics(
    period_hours: int = Query(24, ge=1, le=720),
    service: NotificationService = Depends(get_notification_service),
):
    return await service.metrics.get_metrics(period_hours)


@router.get("/metrics/prometheus", response_class=PlainTextResponse)
async def get_prometheus_metrics(service: NotificationService = Depends(get_notification_service)):
    """Text exposition format for pull-based scrapers."""
    text = await service.metrics.export_prometheus()
    return PlainTextResponse(text, media_type="text/plain; version=0.0.4")


@router.get("/insights", response_model=List[PerformanceInsight])
async def get_insights(service: NotificationService = Depends(get_notification_service)):
    return await service.metrics.get_performance_insights()


@router.get("/preferences/{user_id}", response_model=NotificationPreferences)
async def get_preferences(user_id: str, service: NotificationService = Depends(get_notification_service)):
    try:
        return await service.preference_store.get_preferences(user_id)
    except Exception as e:
        log_and_raise_500(e, f"loading preferences for {user_id}")


@router.put("/preferences/{user_id}", response_model=NotificationPreferences)
async def update_preferences(
    user_id: str,
    body: NotificationPreferences,
    service: NotificationService = Depends(get_notification_service),
):
    try:
        return await service.preference_store.update_preferences(user_id, body)
    except Exception as e:
        log_and_raise_500(e, f"saving preferences for {user_id}")


@router.post("/circuit/reset", response_model=CircuitHealth)
async def reset_circuit(service: NotificationService = Depends(get_notification_service)):
    """Manually close the transport circuit breaker."""
    service.circuit_breaker.force_reset()
    logger.info("Circuit breaker reset via API")
    return service.circuit_breaker.health_check()
