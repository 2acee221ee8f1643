"""
REST API - Author-facing access to resource records.

FastAPI application exposing resource CRUD, finalizer edits, manual
reconciliation triggers, reconciliation history and SSE watch streams.
Every write goes through the kind's admission chain before it is stored
and publishes a resource event afterwards.
"""

import asyncio
import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg
import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator

from admission import AdmissionChain, AdmissionError, AdmissionRequest, SpecRejected
from config import APIConfig
from db import ConflictError
from events import EventBus, EventType, ResourceEvent
from models import ResourceKind, ResourceRecord

logger = logging.getLogger(__name__)

# Kubernetes-style name: lowercase alphanumeric and '-', max 63 chars
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
MAX_SPEC_SIZE = 1024 * 1024

STORE_UNAVAILABLE_ERRORS = (
    OSError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.PostgresConnectionError,
)


def validate_name_format(value: str, field_name: str) -> str:
    if not NAME_PATTERN.match(value or ""):
        raise ValueError(
            f"{field_name} must be at most 63 lowercase alphanumeric characters "
            f"or '-', starting and ending with an alphanumeric character"
        )
    return value


def validate_spec_size(value: Dict[str, Any]) -> Dict[str, Any]:
    if len(json.dumps(value)) > MAX_SPEC_SIZE:
        raise ValueError(f"spec exceeds maximum size of {MAX_SPEC_SIZE // 1024}KB")
    return value


# Request / response models


class ResourceCreate(BaseModel):
    """Request model for creating a resource."""

    namespace: str = Field("default", description="Resource namespace")
    name: str = Field(..., description="Resource name", examples=["my-app"])
    kind: str = Field(..., description="Resource kind", examples=["Website"])
    spec: Dict[str, Any] = Field(default_factory=dict, description="Desired state")

    @field_validator("namespace", "name")
    @classmethod
    def validate_names(cls, v: str, info) -> str:
        return validate_name_format(v, info.field_name)

    @field_validator("spec")
    @classmethod
    def validate_spec(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_spec_size(v)


class ResourceUpdate(BaseModel):
    """Request model for replacing a resource's desired state."""

    spec: Dict[str, Any] = Field(..., description="New desired state")
    resource_version: Optional[int] = Field(
        None, description="Reject the update unless the resource is at this version"
    )

    @field_validator("spec")
    @classmethod
    def validate_spec(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_spec_size(v)


class FinalizersUpdate(BaseModel):
    """Request model for adding/removing finalizers."""

    add: List[str] = Field(default_factory=list)
    remove: List[str] = Field(default_factory=list)


class ResourceResponse(BaseModel):
    """Response model for a resource."""

    id: int
    namespace: str
    name: str
    kind: str
    spec: Dict[str, Any]
    generation: int
    resource_version: int
    finalizers: List[str]
    deleted_at: Optional[datetime] = None
    status: Dict[str, Any]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: ResourceRecord) -> "ResourceResponse":
        return cls(**record.to_dict())


class ReconciliationHistoryResponse(BaseModel):
    """Response model for one reconciliation attempt."""

    id: int
    resource_id: int
    generation: int
    success: bool
    action: str
    reason: Optional[str] = None
    error_message: Optional[str] = None
    requeue_after: Optional[float] = None
    duration_seconds: Optional[float] = None
    reconcile_time: datetime


class KindResponse(BaseModel):
    """Response model for a configured resource kind."""

    name: str
    adapter: str
    schema_: Dict[str, Any] = Field(alias="schema")
    immutable_fields: List[str]
    deletion_protection_field: Optional[str] = None
    status_enabled: bool
    finalizer: str

    model_config = {"populate_by_name": True}


class APIServer:
    """
    REST API server.

    Args:
        db: Resource store
        kinds: Configured kinds by name
        admission: Admission chain per kind name
        event_bus: Receives CREATED/MODIFIED/DELETED events
        controller: Used for manual reconciliation triggers
        config: Host, port and CORS settings
    """

    def __init__(
        self,
        db,
        kinds: Dict[str, ResourceKind],
        admission: Dict[str, AdmissionChain],
        event_bus: Optional[EventBus] = None,
        controller=None,
        config: Optional[APIConfig] = None,
    ):
        self.db = db
        self.kinds = kinds
        self.admission = admission
        self.event_bus = event_bus
        self.controller = controller
        self.config = config or APIConfig()
        self.server: Optional[uvicorn.Server] = None
        self.app = self.create_app()

    def create_app(self) -> FastAPI:
        app = FastAPI(
            title="Declarative Controller API",
            description="Desired-state records reconciled by the controller",
            version="1.0.0",
        )
        if self.config.cors_enabled:
            app.add_middleware(
                CORSMiddleware,
                allow_origins=self.config.cors_origins,
                allow_methods=["*"],
                allow_headers=["*"],
            )
        self._setup_routes(app)
        return app

    # Helpers

    def _require_db(self) -> None:
        if self.db is None:
            raise HTTPException(status_code=503, detail="Database not available")

    def _require_kind(self, kind: str) -> ResourceKind:
        resource_kind = self.kinds.get(kind)
        if resource_kind is None:
            raise HTTPException(status_code=400, detail=f"Unknown kind: {kind}")
        return resource_kind

    async def _get_or_404(self, resource_id: int) -> ResourceRecord:
        record = await self.db.get_resource(resource_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Resource not found")
        return record

    async def _admit(self, request: AdmissionRequest) -> Dict[str, Any]:
        chain = self.admission.get(request.kind)
        if chain is None:
            return request.spec
        try:
            return await chain.run(request)
        except SpecRejected as e:
            raise HTTPException(status_code=400, detail=e.message)
        except AdmissionError as e:
            raise HTTPException(status_code=403, detail=e.message)

    async def _publish(self, event_type: EventType, record: ResourceRecord) -> None:
        if self.event_bus is not None:
            event = ResourceEvent.from_resource(event_type, record)
            await self.event_bus.publish(event)

    @staticmethod
    def _error(e: Exception, action: str) -> HTTPException:
        if isinstance(e, HTTPException):
            return e
        if isinstance(e, ConflictError):
            return HTTPException(status_code=409, detail=e.message)
        if isinstance(e, STORE_UNAVAILABLE_ERRORS):
            logger.error(f"Store unavailable while {action}: {e}")
            return HTTPException(status_code=503, detail="Database not available")
        logger.error(f"Error {action}: {e}", exc_info=True)
        return HTTPException(status_code=500, detail=str(e))

    def _stream(self, filter_fn) -> StreamingResponse:
        if self.event_bus is None:
            raise HTTPException(status_code=503, detail="Event streaming not available")

        async def event_generator():
            subscriber_id, subscription = await self.event_bus.subscribe(filter_fn)
            try:
                async for event in subscription:
                    yield event.to_sse()
            except asyncio.CancelledError:
                pass
            finally:
                await self.event_bus.unsubscribe(subscriber_id)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    def _setup_routes(self, app: FastAPI) -> None:
        """
        Register all routes.

        - Health: GET /
        - Kinds: GET /api/v1/kinds
        - Resources: /api/v1/resources[/{id}], /api/v1/resources/by-name/...
        - Finalizers: PUT /api/v1/resources/{id}/finalizers
        - Reconciliation: POST .../reconcile, GET .../history
        - Watch: GET /api/v1/events, GET /api/v1/resources/{id}/events
        """

        @app.get("/")
        async def health_check():
            return {"status": "ok", "service": "declarative-controller"}

        @app.get("/api/v1/kinds", response_model=List[KindResponse])
        async def list_kinds():
            return [
                KindResponse(
                    name=k.name,
                    adapter=k.adapter,
                    schema=k.schema,
                    immutable_fields=k.immutable_fields,
                    deletion_protection_field=k.deletion_protection_field,
                    status_enabled=k.status_enabled,
                    finalizer=k.finalizer,
                )
                for k in self.kinds.values()
            ]

        # ==================== Resources ====================

        @app.post("/api/v1/resources", response_model=ResourceResponse, status_code=201)
        async def create_resource(resource: ResourceCreate):
            self._require_db()
            self._require_kind(resource.kind)

            try:
                spec = await self._admit(
                    AdmissionRequest(
                        operation="CREATE",
                        kind=resource.kind,
                        namespace=resource.namespace,
                        name=resource.name,
                        spec=resource.spec,
                    )
                )
                resource_id = await self.db.create_resource(
                    namespace=resource.namespace,
                    name=resource.name,
                    kind=resource.kind,
                    spec=spec,
                )
                created = await self._get_or_404(resource_id)
            except asyncpg.exceptions.UniqueViolationError:
                raise HTTPException(
                    status_code=409,
                    detail=f"Resource {resource.kind}/{resource.namespace}/"
                    f"{resource.name} already exists",
                )
            except Exception as e:
                raise self._error(e, "creating resource")

            await self._publish(EventType.CREATED, created)
            return ResourceResponse.from_record(created)

        @app.get("/api/v1/resources", response_model=List[ResourceResponse])
        async def list_resources(
            kind: Optional[str] = None,
            namespace: Optional[str] = None,
            limit: int = 100,
        ):
            self._require_db()
            try:
                records = await self.db.list_resources(
                    kind=kind, namespace=namespace, limit=limit
                )
            except Exception as e:
                raise self._error(e, "listing resources")
            return [ResourceResponse.from_record(r) for r in records]

        @app.get(
            "/api/v1/resources/by-name/{namespace}/{kind}/{name}",
            response_model=ResourceResponse,
        )
        async def get_resource_by_name(namespace: str, kind: str, name: str):
            self._require_db()
            try:
                record = await self.db.get_resource_by_name(namespace, kind, name)
            except Exception as e:
                raise self._error(e, "getting resource")
            if record is None:
                raise HTTPException(status_code=404, detail="Resource not found")
            return ResourceResponse.from_record(record)

        @app.get("/api/v1/resources/{resource_id}", response_model=ResourceResponse)
        async def get_resource(resource_id: int):
            self._require_db()
            try:
                record = await self._get_or_404(resource_id)
            except Exception as e:
                raise self._error(e, "getting resource")
            return ResourceResponse.from_record(record)

        @app.put("/api/v1/resources/{resource_id}", response_model=ResourceResponse)
        async def update_resource(resource_id: int, update: ResourceUpdate):
            self._require_db()
            try:
                record = await self._get_or_404(resource_id)
                if record.is_deleting:
                    raise HTTPException(
                        status_code=409, detail="Resource is being deleted"
                    )
                spec = await self._admit(
                    AdmissionRequest(
                        operation="UPDATE",
                        kind=record.kind,
                        namespace=record.namespace,
                        name=record.name,
                        spec=update.spec,
                        old_spec=record.spec,
                    )
                )
                await self.db.update_resource_spec(
                    resource_id,
                    spec,
                    expected_version=update.resource_version,
                )
                updated = await self._get_or_404(resource_id)
            except ValueError as e:
                raise HTTPException(status_code=409, detail=str(e))
            except Exception as e:
                raise self._error(e, "updating resource")

            await self._publish(EventType.MODIFIED, updated)
            return ResourceResponse.from_record(updated)

        @app.delete("/api/v1/resources/{resource_id}", status_code=202)
        async def delete_resource(resource_id: int):
            self._require_db()
            try:
                record = await self._get_or_404(resource_id)
                await self._admit(
                    AdmissionRequest(
                        operation="DELETE",
                        kind=record.kind,
                        namespace=record.namespace,
                        name=record.name,
                        spec=record.spec,
                        old_spec=record.spec,
                    )
                )
                purged = await self.db.delete_resource(resource_id)
                if not purged:
                    record = await self.db.get_resource(resource_id) or record
            except Exception as e:
                raise self._error(e, "deleting resource")

            await self._publish(EventType.DELETED, record)
            if purged:
                return {"message": "Resource deleted", "resource_id": resource_id}
            return {
                "message": "Resource marked for deletion",
                "resource_id": resource_id,
                "finalizers": record.finalizers,
            }

        @app.put("/api/v1/resources/{resource_id}/finalizers")
        async def update_finalizers(resource_id: int, update: FinalizersUpdate):
            self._require_db()
            try:
                await self._get_or_404(resource_id)
                for finalizer in update.add:
                    await self.db.add_finalizer(resource_id, finalizer)
                for finalizer in update.remove:
                    await self.db.remove_finalizer(resource_id, finalizer)
                updated = await self.db.get_resource(resource_id)
            except Exception as e:
                raise self._error(e, "updating finalizers")

            if updated is None:
                return {
                    "message": "All finalizers removed, resource deleted",
                    "resource_id": resource_id,
                }
            await self._publish(EventType.MODIFIED, updated)
            return ResourceResponse.from_record(updated)

        # ==================== Reconciliation ====================

        @app.post("/api/v1/resources/{resource_id}/reconcile", status_code=202)
        async def trigger_reconciliation(resource_id: int):
            self._require_db()
            if self.controller is None:
                raise HTTPException(status_code=503, detail="Controller not running")
            try:
                record = await self._get_or_404(resource_id)
                self.controller.trigger_reconciliation(record.kind, resource_id)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            except Exception as e:
                raise self._error(e, "triggering reconciliation")
            return {"message": "Reconciliation triggered", "resource_id": resource_id}

        @app.get(
            "/api/v1/resources/{resource_id}/history",
            response_model=List[ReconciliationHistoryResponse],
        )
        async def get_reconciliation_history(resource_id: int, limit: int = 10):
            self._require_db()
            try:
                history = await self.db.get_reconciliation_history(resource_id, limit)
            except Exception as e:
                raise self._error(e, "getting reconciliation history")
            return [ReconciliationHistoryResponse(**row) for row in history]

        # ==================== Watch ====================

        @app.get("/api/v1/events")
        async def stream_all_events(kind: Optional[str] = None):
            """SSE stream of all resource events, optionally for one kind."""
            return self._stream(
                (lambda event: event.kind == kind) if kind else None
            )

        @app.get("/api/v1/resources/{resource_id}/events")
        async def stream_resource_events(resource_id: int):
            """SSE stream of one resource's events."""
            self._require_db()
            await self._get_or_404(resource_id)
            return self._stream(lambda event: event.resource_id == resource_id)

    async def start(self) -> None:
        """Serve the API until stop() is called."""
        config = uvicorn.Config(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower(),
        )
        self.server = uvicorn.Server(config)
        logger.info(f"Starting API server on {self.config.host}:{self.config.port}")
        await self.server.serve()

    async def stop(self) -> None:
        logger.info("Stopping API server")
        if self.server:
            self.server.should_exit = True
