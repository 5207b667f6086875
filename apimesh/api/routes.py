"""
apimesh - HTTP API

Endpoints for executing operations with failover, selecting providers and
reading monitoring data.
"""

from dataclasses import asdict
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..core.errors import ApiMeshException, ProviderNotFoundError
from ..core.models import (
    BudgetTier,
    ExecutionOptions,
    Operation,
    PriorityMode,
    SelectionConstraints,
)
from ..observability.logging import TimedOperation, get_logger
from ..observability.metrics import metrics_endpoint
from ..routing.resilience import ResilienceManager

logger = get_logger(__name__)


# ============================================================
# Pydantic Models
# ============================================================

class SelectionInput(BaseModel):
    """Caller priorities and hard filters."""
    priority: PriorityMode = PriorityMode.BALANCED
    budget: Optional[BudgetTier] = None
    required_features: List[str] = Field(default_factory=list)
    min_quality: Optional[float] = Field(default=None, ge=0, le=10)
    min_reliability: Optional[float] = Field(default=None, ge=0, le=10)
    max_response_time_ms: Optional[float] = Field(default=None, gt=0)
    excluded_providers: List[str] = Field(default_factory=list)

    def to_constraints(self) -> SelectionConstraints:
        return SelectionConstraints(
            priority_mode=self.priority,
            budget_tier=self.budget,
            required_features=set(self.required_features),
            min_quality=self.min_quality,
            min_reliability=self.min_reliability,
            max_response_time_ms=self.max_response_time_ms,
            excluded_providers=set(self.excluded_providers),
        )


class ExecuteRequest(BaseModel):
    """Request to execute an operation with failover."""
    operation: str = Field(..., min_length=1)
    domain: str = Field(..., min_length=1)
    primary_provider: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    selection: Optional[SelectionInput] = None
    deadline_seconds: Optional[float] = Field(default=None, gt=0)


class SelectRequest(BaseModel):
    """Request to rank the providers of a domain."""
    domain: str = Field(..., min_length=1)
    candidates: Optional[List[Union[str, Dict[str, Any]]]] = None
    constraints: Optional[SelectionInput] = None


# ============================================================
# Router
# ============================================================

def create_router(manager: ResilienceManager) -> APIRouter:
    """Build the /v1 router bound to one resilience manager."""
    router = APIRouter(prefix="/v1", tags=["apimesh"])

    def get_manager() -> ResilienceManager:
        return manager

    @router.post("/execute")
    async def execute(
        body: ExecuteRequest,
        manager: ResilienceManager = Depends(get_manager),
    ):
        """
        Execute an operation, failing over to other providers of the domain.

        Always answers 200; `success` and `error_code` describe the outcome.
        """
        result = await manager.execute_with_fallback(
            Operation(type=body.operation, domain=body.domain),
            ExecutionOptions(
                primary_provider=body.primary_provider,
                parameters=body.parameters,
                selection=body.selection.to_constraints() if body.selection else None,
                deadline_seconds=body.deadline_seconds,
            ),
        )
        return JSONResponse(content=result.to_dict())

    @router.post("/select")
    async def select(
        body: SelectRequest,
        manager: ResilienceManager = Depends(get_manager),
    ):
        """Rank candidates and return the best one with alternatives."""
        constraints = body.constraints.to_constraints() if body.constraints else None
        selection = manager.selector.select_optimal_api(body.domain, body.candidates, constraints)
        return JSONResponse(content=selection.to_dict())

    @router.get("/providers/{provider_id}/stats")
    async def provider_stats(
        provider_id: str,
        window: Optional[int] = Query(None, ge=1, le=10000),
        manager: ResilienceManager = Depends(get_manager),
    ):
        """Performance statistics, alerts, trend and insights for one provider."""
        monitor = manager.performance_monitor
        if manager.catalog.get_provider(provider_id) is None and not monitor.has_data(provider_id):
            raise ProviderNotFoundError(provider_id)

        alerts = monitor.get_active_alerts().get(provider_id)
        trend = monitor.get_trend_analysis(provider_id)
        insights = monitor.get_performance_insights(provider_id)
        return JSONResponse(content={
            "provider_id": provider_id,
            "stats": monitor.get_api_stats(provider_id).to_dict(),
            "recent": asdict(monitor.get_recent_stats(provider_id, window)),
            "daily": monitor.get_daily_stats(provider_id),
            "operations": monitor.get_operation_stats(provider_id),
            "alerts": asdict(alerts) if alerts else None,
            "trend": asdict(trend) if trend else None,
            "insights": asdict(insights) if insights else None,
            "circuit_state": manager.get_circuit_state(provider_id).value,
        })

    @router.get("/dashboard")
    async def dashboard(manager: ResilienceManager = Depends(get_manager)):
        """Monitoring overview of every tracked provider."""
        with TimedOperation("dashboard_build", logger):
            dashboard = manager.performance_monitor.get_monitoring_dashboard()
        return JSONResponse(content=dashboard)

    @router.get("/fallback/stats")
    async def fallback_stats(
        domain: Optional[str] = Query(None),
        manager: ResilienceManager = Depends(get_manager),
    ):
        return JSONResponse(content=manager.get_fallback_stats(domain))

    @router.delete("/fallback/state")
    async def reset_fallback_state(
        provider_id: Optional[str] = Query(None),
        manager: ResilienceManager = Depends(get_manager),
    ):
        """Reset one provider's breaker and fallback usage, or all of them."""
        manager.reset_fallback_state(provider_id)
        return JSONResponse(content={"reset": provider_id or "all"})

    @router.get("/quality/{domain}")
    async def quality_stats(
        domain: str,
        manager: ResilienceManager = Depends(get_manager),
    ):
        """Quality and selection history for a domain."""
        content = manager.quality_scorer.get_quality_stats(domain)
        content["selection"] = manager.selector.get_selection_stats(domain)
        return JSONResponse(content=content)

    return router


# ============================================================
# Application
# ============================================================

def create_app(manager: ResilienceManager) -> FastAPI:
    """FastAPI application exposing the router plus /metrics."""
    app = FastAPI(
        title="apimesh",
        description="Adaptive provider selection and failover",
        version=__version__,
    )
    app.include_router(create_router(manager))

    @app.exception_handler(ApiMeshException)
    async def apimesh_exception_handler(request: Request, exc: ApiMeshException):
        """Handle all apimesh errors."""
        headers = {"X-Error-Code": exc.error.code}
        if exc.error.retry_after:
            headers["Retry-After"] = str(exc.error.retry_after)
        if exc.error.provider:
            headers["X-Provider"] = exc.error.provider
        logger.warning("Request failed", code=exc.error.code, path=request.url.path)
        return JSONResponse(status_code=exc.status_code, content=exc.error.to_dict(), headers=headers)

    @app.get("/metrics")
    async def prometheus_metrics():
        """
        Prometheus metrics endpoint.

        Exposes the manager's collector in Prometheus text format.
        """
        return metrics_endpoint(manager.metrics.registry)

    return app
