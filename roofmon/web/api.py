from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from roofmon.core.errors import MonitoringError, NotFoundError
from roofmon.web.models import AlertActionResponse, TriggerRecoveryRequest, TriggerRecoveryResponse

_STATUS_FOR_CODE = {
    "not_found": 404,
    "registration_error": 400,
    "validation_error": 400,
}


def _dump(items: List[BaseModel], limit: Optional[int]) -> List[Dict[str, Any]]:
    if limit is not None:
        items = items[: max(0, int(limit))]
    return [x.model_dump(mode="json") for x in items]


def create_app(service, *, logger=None) -> FastAPI:  # noqa: ANN001
    """Read-mostly dashboard surface over a MonitoringService."""
    app = FastAPI(title="roofmon", version="0.1.0")
    store = service.store

    @app.exception_handler(MonitoringError)
    async def monitoring_error_handler(request: Request, exc: MonitoringError):
        if logger is not None:
            logger.warning(f"web {request.method} {request.url.path} -> {exc.code}")
        return JSONResponse(status_code=_STATUS_FOR_CODE.get(exc.code, 500), content={"detail": exc.user_message, "code": exc.code})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": "Invalid request.", "code": "validation_error"})

    @app.get("/health")
    async def health():
        return {"status": "ok" if service.running else "stopped"}

    # -------- monitoring queries --------
    @app.get("/v1/monitoring/errors")
    async def list_errors(component: Optional[str] = None, level: Optional[str] = None, hooks: bool = False, limit: Optional[int] = Query(default=None, ge=0)):
        if hooks:
            return {"errors": _dump(store.get_hooks_errors(), limit)}
        return {"errors": _dump(store.get_errors(component_name=component, level=level), limit)}

    @app.get("/v1/monitoring/metrics")
    async def list_metrics(component: Optional[str] = None, metric_type: Optional[str] = None, limit: Optional[int] = Query(default=None, ge=0)):
        return {"metrics": _dump(store.get_metrics(component_name=component, metric_type=metric_type), limit)}

    @app.get("/v1/monitoring/alerts")
    async def list_alerts(
        type: Optional[str] = None,
        severity: Optional[str] = None,
        acknowledged: Optional[bool] = None,
        resolved: Optional[bool] = None,
        component: Optional[str] = None,
        limit: Optional[int] = Query(default=None, ge=0),
    ):
        alerts = store.get_alerts(type=type, severity=severity, acknowledged=acknowledged, resolved=resolved, component_name=component)
        return {"alerts": _dump(alerts, limit)}

    @app.get("/v1/monitoring/alerts/stats")
    async def alert_stats():
        return store.get_alert_stats().model_dump()

    @app.post("/v1/monitoring/alerts/{alert_id}/acknowledge", response_model=AlertActionResponse)
    async def acknowledge_alert(alert_id: str):
        alert = store.acknowledge_alert(alert_id)
        if alert is None:
            raise NotFoundError("Alert not found.", alert_id=alert_id)
        return AlertActionResponse(ok=True, alert=alert.model_dump(mode="json"))

    @app.post("/v1/monitoring/alerts/{alert_id}/resolve", response_model=AlertActionResponse)
    async def resolve_alert(alert_id: str):
        alert = store.resolve_alert(alert_id)
        if alert is None:
            raise NotFoundError("Alert not found.", alert_id=alert_id)
        return AlertActionResponse(ok=True, alert=alert.model_dump(mode="json"))

    @app.get("/v1/monitoring/health")
    async def list_health(component: Optional[str] = None):
        return {"health": _dump(store.get_health(component), None)}

    @app.get("/v1/monitoring/stats")
    async def monitoring_stats(component: Optional[str] = None):
        return {
            "service": service.get_stats(),
            "errors": store.get_error_analytics().model_dump(),
            "performance": store.get_performance_analytics(component).model_dump(),
        }

    # -------- recovery --------
    @app.get("/v1/recovery/history")
    async def recovery_history(component: Optional[str] = None, limit: Optional[int] = Query(default=None, ge=0)):
        history = service.recovery.get_recovery_history(component)
        if limit is not None:
            history = history[-limit:] if limit else []
        return {"attempts": [a.model_dump(mode="json") for a in history]}

    @app.get("/v1/recovery/components")
    async def recovery_components():
        out = {}
        for name in service.recovery.get_registered_components():
            out[name] = [a.model_dump(mode="json") for a in service.recovery.get_component_actions(name)]
        return {"components": out}

    @app.post("/v1/recovery/{component}/trigger", response_model=TriggerRecoveryResponse)
    async def trigger_recovery(component: str, req: Optional[TriggerRecoveryRequest] = Body(default=None)):
        if component not in service.recovery.get_registered_components():
            raise NotFoundError("Component not registered for recovery.", component_name=component)
        action_id = req.action_id if req is not None else None
        fut = service.recovery.trigger_recovery(component, action_id)
        return TriggerRecoveryResponse(scheduled=fut is not None, component_name=component, action_id=action_id)

    return app
