"""Alert API endpoints for operators."""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from alert_store import AlertStore
from models import Alert, AlertSeverity, AlertType

router = APIRouter(prefix="/alerts", tags=["alerts"])


class AlertResponse(BaseModel):
    id: str
    type: AlertType
    severity: AlertSeverity
    warehouse_id: Optional[str]
    shelf_id: Optional[str] = None
    device_id: Optional[str] = None
    product_id: Optional[str] = None
    message: str
    details: Dict[str, Any] = {}
    resolved: bool
    created_at: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[str] = None

    @classmethod
    def from_alert(cls, alert: Alert) -> "AlertResponse":
        return cls(
            id=alert.id,
            type=alert.type,
            severity=alert.severity,
            warehouse_id=alert.warehouse_id,
            shelf_id=alert.shelf_id,
            device_id=alert.device_id,
            product_id=alert.product_id,
            message=alert.message,
            details=alert.details,
            resolved=alert.resolved,
            created_at=alert.created_at,
            resolved_by=alert.resolved_by,
            resolved_at=alert.resolved_at,
        )


class AlertResolve(BaseModel):
    resolved_by: str = Field(..., min_length=1, description="Id of the operator resolving the alert")


def get_alert_store(request: Request) -> AlertStore:
    return request.app.state.pipeline.alert_store


@router.get("", response_model=List[AlertResponse])
def list_alerts(
    warehouse_id: Optional[str] = Query(None),
    resolved: Optional[bool] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    alert_store: AlertStore = Depends(get_alert_store),
):
    """List alerts, optionally filtered by warehouse and resolution state."""
    alerts = alert_store.list_alerts(warehouse_id=warehouse_id, resolved=resolved, limit=limit)
    return [AlertResponse.from_alert(alert) for alert in alerts]


@router.get("/{alert_id}", response_model=AlertResponse)
def get_alert(alert_id: str, alert_store: AlertStore = Depends(get_alert_store)):
    alert = alert_store.get(alert_id)
    if not alert:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    return AlertResponse.from_alert(alert)


@router.post("/{alert_id}/resolve", response_model=AlertResponse)
def resolve_alert(
    alert_id: str,
    payload: AlertResolve,
    alert_store: AlertStore = Depends(get_alert_store),
):
    """
    Resolve an alert.

    Once resolved, the same condition may raise a new alert. Resolving an
    already resolved alert returns it unchanged.
    """
    alert = alert_store.resolve(alert_id, payload.resolved_by)
    if not alert:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    return AlertResponse.from_alert(alert)
