# ============================================================================
# src/fhir_validation/api/main.py
# ============================================================================
"""
FastAPI Backend for the FHIR Validation Engine

Thin HTTP layer over the core services:
- single-resource validation (result or OperationOutcome)
- bulk validation control and progress
- validation settings and presets
- custom business rule administration

Services are built in the lifespan handler and stored on app.state;
collaborators can be injected through create_app() for testing.

Run:
    uvicorn fhir_validation.api.main:app --port 8000
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, FastAPI, HTTPException, Request, Response
from pydantic import BaseModel

from ..bulk.orchestrator import BulkValidationOptions, BulkValidationService, BulkValidationState
from ..clients.base import FHIRClient, TerminologyClient
from ..clients.fhir_client import AiohttpFHIRClient
from ..clients.terminology_client import AiohttpTerminologyClient
from ..clients.settings_sync import ClientSettingsSync
from ..config.logging_config import logging_settings
from ..config.settings_service_config import SettingsServiceSettings
from ..core.engine import ValidationEngine
from ..fhir_utils.operation_outcome import operation_outcome_dict
from ..profiles.resolver import ProfileResolver
from ..rules.executor import CustomRuleExecutor
from ..rules.service import BusinessRuleService
from ..settings.backup import SettingsBackupService
from ..settings.service import ValidationSettingsService
from ..storage.base import ValidationStorage
from ..storage.sqlite_store import SQLiteStorage
from ..utils.exceptions import (
    ActiveSettingsDeletionError,
    BusinessRuleError,
    InvalidSettingsError,
    RuleNotFoundError,
    SettingsNotFoundError,
)
from ..utils.logging import setup_logging
from ..utils.metrics import MetricsCollector

logger = logging.getLogger(__name__)


@dataclass
class Services:
    storage: ValidationStorage
    fhir_client: FHIRClient
    terminology_client: TerminologyClient
    profile_resolver: Any
    settings_service: ValidationSettingsService
    rule_service: BusinessRuleService
    rule_executor: CustomRuleExecutor
    engine: ValidationEngine
    bulk: BulkValidationService
    metrics: Optional[MetricsCollector] = None
    tasks: List[asyncio.Task] = field(default_factory=list)

    def run_in_background(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self.tasks.append(task)
        task.add_done_callback(self._forget)
        return task

    def _forget(self, task: asyncio.Task) -> None:
        if task in self.tasks:
            self.tasks.remove(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task failed: {task.exception()}")


# ============================================================================
# Models
# ============================================================================

class BulkStartRequest(BaseModel):
    resource_types: Optional[List[str]] = None
    batch_size: Optional[int] = None
    parallel_width: Optional[int] = None
    skip_unchanged: bool = True
    force_revalidation: bool = False


class RuleRequest(BaseModel):
    name: Optional[str] = None
    expression: Optional[str] = None
    resource_types: Optional[List[str]] = None
    description: Optional[str] = None
    severity: Optional[str] = None
    enabled: Optional[bool] = None
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


def get_services(request: Request) -> Services:
    return request.app.state.services


# ============================================================================
# Validation endpoints
# ============================================================================

validation_router = APIRouter(prefix="/api/validation", tags=["validation"])


@validation_router.post("/validate")
async def validate_resource(request: Request, resource: Dict[str, Any] = Body(...)):
    """Validate one resource with the active settings."""
    services = get_services(request)
    result = await services.engine.validate_resource(resource)
    return result.to_dict()


@validation_router.post("/validate/outcome")
async def validate_resource_outcome(request: Request, resource: Dict[str, Any] = Body(...)):
    """Validate one resource and return a FHIR OperationOutcome."""
    services = get_services(request)
    result = await services.engine.validate_resource(resource)
    return operation_outcome_dict(result)


@validation_router.post("/bulk/start", status_code=202)
async def start_bulk_validation(request: Request, body: Optional[BulkStartRequest] = None):
    services = get_services(request)
    if services.bulk.get_state() != BulkValidationState.IDLE:
        raise HTTPException(status_code=409, detail="Bulk validation already in progress")

    body = body or BulkStartRequest()
    options = BulkValidationOptions(
        resource_types=body.resource_types,
        batch_size=body.batch_size,
        parallel_width=body.parallel_width,
        skip_unchanged=body.skip_unchanged,
        force_revalidation=body.force_revalidation,
    )
    services.run_in_background(services.bulk.validate_all_resources(options))
    return {"started": True}


@validation_router.post("/bulk/pause")
async def pause_bulk_validation(request: Request):
    services = get_services(request)
    paused = services.bulk.pause_validation()
    return {"paused": paused, "state": services.bulk.get_state().value}


@validation_router.post("/bulk/resume", status_code=202)
async def resume_bulk_validation(request: Request):
    services = get_services(request)
    if not services.bulk.is_paused():
        raise HTTPException(status_code=409, detail="Bulk validation is not paused")
    services.run_in_background(services.bulk.resume_validation())
    return {"resumed": True}


@validation_router.post("/bulk/stop")
async def stop_bulk_validation(request: Request):
    services = get_services(request)
    services.bulk.stop_validation()
    return {"stopped": True, "state": services.bulk.get_state().value}


@validation_router.get("/bulk/progress")
async def bulk_validation_progress(request: Request):
    services = get_services(request)
    progress = services.bulk.get_progress()
    return {
        "state": services.bulk.get_state().value,
        "progress": progress.to_dict() if progress else None,
    }


# ============================================================================
# Settings endpoints
# ============================================================================

@validation_router.get("/settings")
async def get_settings(request: Request):
    services = get_services(request)
    settings = await services.settings_service.get_active_settings()
    return settings.model_dump(mode="json")


@validation_router.put("/settings")
async def update_settings(request: Request, changes: Dict[str, Any] = Body(...)):
    services = get_services(request)
    try:
        settings = await services.settings_service.update_settings(changes, updated_by="api")
    except InvalidSettingsError as e:
        raise HTTPException(status_code=400, detail={"message": str(e), "issues": e.issues})
    return settings.model_dump(mode="json")


@validation_router.get("/settings/presets")
async def get_presets(request: Request):
    services = get_services(request)
    return services.settings_service.get_presets()


@validation_router.post("/settings/{settings_id}/activate")
async def activate_settings(request: Request, settings_id: str):
    services = get_services(request)
    try:
        settings = await services.settings_service.activate_settings(settings_id, activated_by="api")
    except SettingsNotFoundError:
        raise HTTPException(status_code=404, detail=f"Settings {settings_id} not found")
    except (InvalidSettingsError, ActiveSettingsDeletionError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return settings.model_dump(mode="json")


# ============================================================================
# Business rule endpoints
# ============================================================================

rules_router = APIRouter(prefix="/api/rules", tags=["rules"])


@rules_router.get("")
async def list_rules(
    request: Request,
    resource_type: Optional[str] = None,
    search: Optional[str] = None,
    severity: Optional[str] = None,
    enabled: Optional[bool] = None,
    category: Optional[str] = None,
):
    services = get_services(request)
    rules = await services.rule_service.search_rules(
        text=search, severity=severity, enabled=enabled,
        resource_type=resource_type, category=category,
    )
    return [rule.to_dict() for rule in rules]


@rules_router.post("", status_code=201)
async def create_rule(request: Request, body: RuleRequest):
    services = get_services(request)
    try:
        rule = await services.rule_service.create_rule(body.changes(), created_by="api")
    except BusinessRuleError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return rule.to_dict()


@rules_router.get("/{rule_id}")
async def get_rule(request: Request, rule_id: str):
    services = get_services(request)
    try:
        rule = await services.rule_service.get_rule(rule_id)
    except RuleNotFoundError:
        raise HTTPException(status_code=404, detail=f"Rule {rule_id} not found")
    return rule.to_dict()


@rules_router.put("/{rule_id}")
async def update_rule(request: Request, rule_id: str, body: RuleRequest):
    services = get_services(request)
    try:
        rule = await services.rule_service.update_rule(rule_id, body.changes(), updated_by="api")
    except RuleNotFoundError:
        raise HTTPException(status_code=404, detail=f"Rule {rule_id} not found")
    except BusinessRuleError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return rule.to_dict()


@rules_router.delete("/{rule_id}", status_code=204)
async def delete_rule(request: Request, rule_id: str):
    services = get_services(request)
    try:
        await services.rule_service.delete_rule(rule_id, deleted_by="api")
    except RuleNotFoundError:
        raise HTTPException(status_code=404, detail=f"Rule {rule_id} not found")
    return Response(status_code=204)


@rules_router.get("/{rule_id}/versions")
async def get_rule_versions(request: Request, rule_id: str):
    services = get_services(request)
    try:
        versions = await services.rule_service.get_rule_versions(rule_id)
    except RuleNotFoundError:
        raise HTTPException(status_code=404, detail=f"Rule {rule_id} not found")
    return [version.to_dict() for version in versions]


# ============================================================================
# App factory
# ============================================================================

async def build_services(
    storage: Optional[ValidationStorage] = None,
    fhir_client: Optional[FHIRClient] = None,
    terminology_client: Optional[TerminologyClient] = None,
    profile_resolver: Optional[Any] = None,
    settings_config: Optional[SettingsServiceSettings] = None,
) -> Services:
    """Construct and initialize every service; missing collaborators get the defaults."""
    storage = storage or SQLiteStorage()
    profile_resolver = profile_resolver or ProfileResolver()
    metrics = MetricsCollector() if logging_settings.ENABLE_METRICS else None

    settings_service = ValidationSettingsService(
        storage, SettingsBackupService(storage), config=settings_config
    )
    await settings_service.initialize()
    active = await settings_service.get_active_settings()

    # Clients built here follow the active settings; injected ones are left alone
    sync = ClientSettingsSync()
    if fhir_client is None:
        fhir_client = sync.fhir_client = AiohttpFHIRClient()
    if terminology_client is None:
        terminology_client = sync.terminology_client = AiohttpTerminologyClient(active.terminology_servers)
    sync.apply(active)
    settings_service.subscribe(sync)

    rule_executor = CustomRuleExecutor(storage, metrics=metrics)
    rule_service = BusinessRuleService(storage)
    rule_service.subscribe(rule_executor)

    engine = ValidationEngine(
        settings_service=settings_service,
        fhir_client=fhir_client,
        terminology_client=terminology_client,
        profile_resolver=profile_resolver,
        storage=storage,
        rule_executor=rule_executor,
        metrics=metrics,
    )

    return Services(
        storage=storage,
        fhir_client=fhir_client,
        terminology_client=terminology_client,
        profile_resolver=profile_resolver,
        settings_service=settings_service,
        rule_service=rule_service,
        rule_executor=rule_executor,
        engine=engine,
        bulk=BulkValidationService(fhir_client, engine, storage),
        metrics=metrics,
    )


async def close_services(services: Services) -> None:
    services.bulk.stop_validation()
    for task in list(services.tasks):
        task.cancel()
    await services.settings_service.shutdown()
    await services.fhir_client.close()
    await services.terminology_client.close()
    if hasattr(services.profile_resolver, "close"):
        await services.profile_resolver.close()


def create_app(**collaborators) -> FastAPI:
    """
    Build the FastAPI application.

    Keyword arguments are passed to build_services() (storage, fhir_client,
    terminology_client, profile_resolver, settings_config).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting FHIR validation services...")
        app.state.services = await build_services(**collaborators)
        logger.info("FHIR validation services ready")
        yield
        await close_services(app.state.services)
        logger.info("FHIR validation services stopped")

    app = FastAPI(
        title="FHIR Validation Engine API",
        description="Multi-aspect validation of FHIR resources",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.get("/api/health")
    async def health(request: Request):
        """Health check for monitoring."""
        services = get_services(request)
        return {
            "status": "healthy",
            "settings": services.settings_service.health_status(),
            "bulk_state": services.bulk.get_state().value,
        }

    @app.get("/api/metrics")
    async def metrics(request: Request):
        """Counters and timings; empty when metrics are disabled."""
        services = get_services(request)
        return services.metrics.snapshot() if services.metrics else {"counters": {}, "timers": {}}

    app.include_router(validation_router)
    app.include_router(rules_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    setup_logging(
        level=logging_settings.LOG_LEVEL,
        log_file=logging_settings.LOG_FILE,
        format_json=logging_settings.LOG_FORMAT_JSON,
    )
    uvicorn.run(app, host="0.0.0.0", port=8000)
