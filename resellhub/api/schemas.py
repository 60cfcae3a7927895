"""
Pydantic schemas for API request/response models.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class WebhookResponse(BaseModel):
    """Response schema for an accepted payment webhook."""

    success: bool = Field(..., description="Whether the notification was accepted")
    type: str = Field(..., description="Aggregate the notification resolved to (ORDER/DEPOSIT)")
    action: str = Field(..., description="What was done")
    message: str = Field(..., description="Human readable summary")
    fulfillment_error: Optional[str] = Field(
        default=None, description="Fulfillment failure of a paid order, if any"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "success": True,
                    "type": "DEPOSIT",
                    "action": "credited",
                    "message": "Deposit credited",
                }
            ]
        }
    }


class ErrorResponse(BaseModel):
    error: str


class CatalogSyncResponse(BaseModel):
    """Response schema for a catalog sync run."""

    success: bool
    message: str
    platforms: List[str]
    products_created: int
    variants_created: int
    variants_updated: int
    products_deleted: int
    skipped_services: int
    failed_platforms: List[str] = Field(default_factory=list)
    stale_products: List[str] = Field(
        default_factory=list, description="Products the cleanup deleted or would delete"
    )
    cleanup_skipped_reason: Optional[str] = None
    dry_run: bool = False


class WalletAuditResponse(BaseModel):
    """Stored balance against the sum of the user's ledger entries."""

    user_id: int
    balance: Decimal
    ledger_total: Decimal
    transaction_count: int
    consistent: bool


class TrackingResponse(BaseModel):
    order_id: int
    order_status: str
    items: Dict[int, str]


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = None
