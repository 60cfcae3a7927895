"""
API routes: payment webhook, catalog sync trigger, admin and monitoring.
"""
import asyncio
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from resellhub.core.catalog_sync import CatalogSyncError
from resellhub.core.errors import ConfigurationError, ReconciliationError
from resellhub.core.fulfillment import FulfillmentError
from resellhub.core.ledger import LedgerError
from resellhub.integrations.pakasir_client import WebhookNotification
from resellhub.monitoring.metrics import metrics

from .dependencies import Services, get_services
from .schemas import (
    CatalogSyncResponse,
    ErrorResponse,
    HealthCheckResponse,
    TrackingResponse,
    WalletAuditResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
catalog_router = APIRouter(prefix="/catalog", tags=["catalog"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


@webhook_router.post(
    "/pakasir",
    response_model=WebhookResponse,
    responses={code: {"model": ErrorResponse} for code in (400, 403, 404, 500, 502, 504)},
    summary="Pakasir payment webhook",
    description="Verify a payment notification with the gateway and apply it",
)
async def pakasir_webhook(
    notification: WebhookNotification,
    services: Services = Depends(get_services),
) -> Any:
    """
    Handle a Pakasir payment notification.

    Rejections answer with the status of their class so the gateway can
    decide whether to redeliver; redeliveries of handled notifications
    answer 200.
    """
    try:
        outcome = await services.reconciler.handle(
            notification, timeout=services.settings.webhook_timeout_seconds
        )
    except asyncio.TimeoutError:
        metrics.record_webhook_rejected("timeout")
        logger.error("api_webhook_timeout", order_id=notification.order_id)
        return JSONResponse(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT, content={"error": "Processing timed out"}
        )
    except ReconciliationError as e:
        return JSONResponse(status_code=e.status_code, content={"error": e.message})
    except LedgerError as e:
        logger.error("api_webhook_ledger_error", order_id=notification.order_id, error=str(e))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal Server Error"},
        )

    return outcome.to_response()


@catalog_router.post(
    "/medanpedia/sync",
    response_model=CatalogSyncResponse,
    summary="Sync MedanPedia catalog",
    description="Reconcile the local SMM catalog with MedanPedia's service list",
)
async def sync_medanpedia_catalog(
    dry_run: bool = Query(default=False, description="Report stale products without deleting"),
    force_cleanup: bool = Query(default=False, description="Bypass the delete-ratio guard"),
    margin_percent: Optional[float] = Query(default=None, ge=0, le=1000),
    services: Services = Depends(get_services),
) -> Any:
    """Run one catalog sync. Concurrent triggers are refused."""
    if services.sync_lock.locked():
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"success": False, "error": "Sync already running"},
        )

    async with services.sync_lock:
        logger.info("api_catalog_sync_started", dry_run=dry_run, force_cleanup=force_cleanup)
        try:
            result = await asyncio.wait_for(
                services.catalog_sync.sync(
                    margin_percent=margin_percent,
                    dry_run=dry_run,
                    force_cleanup=force_cleanup,
                ),
                timeout=services.settings.catalog_sync_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error("api_catalog_sync_timeout")
            return JSONResponse(
                status_code=status.HTTP_504_GATEWAY_TIMEOUT,
                content={"success": False, "error": "Sync timed out"},
            )
        except CatalogSyncError as e:
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"success": False, "error": str(e)},
            )

    return result.to_dict()


@admin_router.get(
    "/wallet/{user_id}/audit",
    response_model=WalletAuditResponse,
    summary="Audit a wallet",
    description="Compare a user's balance with the sum of their ledger entries",
)
async def audit_wallet(
    user_id: int,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    try:
        audit = await services.ledger.audit(user_id)
    except LedgerError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return {
        "user_id": audit.user_id,
        "balance": audit.balance,
        "ledger_total": audit.ledger_total,
        "transaction_count": audit.transaction_count,
        "consistent": audit.consistent,
    }


@admin_router.post(
    "/orders/{order_id}/fulfill",
    summary="Retry fulfillment",
    description="Place provider orders for items of a paid order not yet placed",
)
async def retry_fulfillment(
    order_id: int,
    force: bool = Query(
        default=False, description="Re-place items held for review after an unknown outcome"
    ),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    if force:
        logger.warning("api_fulfillment_forced", order_id=order_id)
    try:
        await services.fulfillment.fulfill_order(order_id, force=force)
        report = await services.fulfillment.track_order(order_id)
    except FulfillmentError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=e.message)

    return {"success": True, "order_id": order_id, "order_status": report.order_status}


@admin_router.post(
    "/orders/{order_id}/track",
    response_model=TrackingResponse,
    summary="Track provider orders",
    description="Poll provider status for the order's placed items",
)
async def track_order(
    order_id: int,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    try:
        report = await services.fulfillment.track_order(order_id)
    except FulfillmentError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=e.message)

    return {
        "order_id": report.order_id,
        "order_status": report.order_status,
        "items": {item_id: item_status.value for item_id, item_status in report.items.items()},
    }


@admin_router.get(
    "/webhooks/log",
    summary="Recent webhooks",
    description="Most recent verified webhook payloads (diagnostic log)",
)
async def webhook_log(
    limit: int = Query(default=50, ge=1, le=50),
    services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    return await services.webhook_log.recent(limit)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await services.health.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await services.health.readiness()
    if result["status"] == "unhealthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
