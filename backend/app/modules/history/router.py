"""
API Router for customer history endpoints.

Values in every response are revealed for the calling user: permitted viewers
see plaintext, everyone else the masked previews.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import Response

from app.core.audit import AccessAction, AccessEventFilter, AccessLogUnavailableError
from app.core.encryption import EncryptionError
from app.core.logging import get_logger
from app.core.security import AdminId, CallerId
from app.modules.history.container import HistoryServices, get_services
from app.modules.history.errors import (
    InvalidMutationError,
    InvalidVersionError,
    NotFoundError,
    OperationFailedError,
    StoreUnavailableError,
)
from app.modules.history.models import AuditConfiguration, Operation, VersionFilter
from app.modules.history.schemas import (
    AccessEventResponse,
    AuditConfigurationResponse,
    AuditConfigurationUpdate,
    ChainVerificationResponse,
    ChangeRowResponse,
    FieldChangeResponse,
    KeyHealthResponse,
    KeyInfoResponse,
    MutationRequest,
    MutationResponse,
    RetentionResponse,
    StatisticsResponse,
    VersionEntryResponse,
    VersionListResponse,
)

logger = get_logger(__name__)

router = APIRouter()

Services = Annotated[HistoryServices, Depends(get_services)]

_EXPORT_MEDIA_TYPES = {
    "json": "application/json",
    "csv": "text/csv; charset=utf-8",
}


def _not_found(exc: NotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _unprocessable(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))


def _operation_failed() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="operation failed",
    )


def _store_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="History store unavailable",
    )


def _parse_fields(changed_fields: str | None) -> frozenset[str] | None:
    if not changed_fields:
        return None
    names = frozenset(name.strip() for name in changed_fields.split(",") if name.strip())
    return names or None


# -----------------------------------------------------------------------------
# Recording
# -----------------------------------------------------------------------------


@router.post(
    "/subjects/{subject_id}/mutations",
    response_model=MutationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_mutation(
    subject_id: str,
    body: MutationRequest,
    caller_id: CallerId,
    services: Services,
) -> MutationResponse:
    """Record one mutation of a customer record."""
    try:
        entry = await services.history.record_mutation(
            subject_id,
            previous=body.previous,
            new=body.new,
            actor_id=caller_id,
            reason=body.reason,
            operation=body.operation,
            tenant_id=body.tenant_id,
            skip_unchanged=body.skip_unchanged,
        )
    except InvalidMutationError as exc:
        raise _unprocessable(exc) from exc
    except StoreUnavailableError as exc:
        raise _store_unavailable() from exc
    except EncryptionError as exc:
        logger.error("history_mutation_protect_failed", subject_id=subject_id, error=str(exc))
        raise _operation_failed() from exc

    if entry is None:
        return MutationResponse(recorded=False)
    # The writer gets back masked previews, same as any unprivileged reader.
    revealed = await services.history.get_version(subject_id, entry.version, caller_id=caller_id)
    return MutationResponse(recorded=True, entry=VersionEntryResponse.from_entry(revealed))


# -----------------------------------------------------------------------------
# Reads
# -----------------------------------------------------------------------------


@router.get("/subjects/{subject_id}/versions", response_model=VersionListResponse)
async def list_versions(
    subject_id: str,
    caller_id: CallerId,
    services: Services,
    operation: Operation | None = Query(None, description="Filter by operation"),
    actor_id: str | None = Query(None, description="Filter by actor"),
    date_from: datetime | None = Query(None, description="Earliest occurrence (inclusive)"),
    date_to: datetime | None = Query(None, description="Latest occurrence (inclusive)"),
    changed_fields: str | None = Query(
        None, description="Comma-separated field names; matches versions changing any of them"
    ),
    search: str | None = Query(None, max_length=200, description="Text search over reasons"),
    limit: int = Query(50, ge=1, le=1000),
    offset: int = Query(0, ge=0),
) -> VersionListResponse:
    """List a subject's versions, newest first."""
    filters = VersionFilter(
        operation=operation,
        actor_id=actor_id,
        date_from=date_from,
        date_to=date_to,
        changed_fields=_parse_fields(changed_fields),
        search=search,
        limit=limit,
        offset=offset,
    )
    try:
        page = await services.history.list_history(subject_id, filters, caller_id=caller_id)
    except (StoreUnavailableError, AccessLogUnavailableError) as exc:
        raise _store_unavailable() from exc
    return VersionListResponse.from_page(page)


@router.get("/subjects/{subject_id}/versions/{version}", response_model=VersionEntryResponse)
async def get_version(
    subject_id: str,
    version: int,
    caller_id: CallerId,
    services: Services,
) -> VersionEntryResponse:
    try:
        entry = await services.history.get_version(subject_id, version, caller_id=caller_id)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    except InvalidVersionError as exc:
        raise _unprocessable(exc) from exc
    except (StoreUnavailableError, AccessLogUnavailableError) as exc:
        raise _store_unavailable() from exc
    return VersionEntryResponse.from_entry(entry)


@router.get(
    "/subjects/{subject_id}/versions/{version}/changes",
    response_model=list[ChangeRowResponse],
)
async def describe_changes(
    subject_id: str,
    version: int,
    caller_id: CallerId,
    services: Services,
) -> list[ChangeRowResponse]:
    """Labelled, display-formatted changes introduced by one version."""
    try:
        rows = await services.history.describe_changes(subject_id, version, caller_id=caller_id)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    except InvalidVersionError as exc:
        raise _unprocessable(exc) from exc
    except (StoreUnavailableError, AccessLogUnavailableError) as exc:
        raise _store_unavailable() from exc
    return [ChangeRowResponse.from_row(row) for row in rows]


@router.get("/subjects/{subject_id}/compare", response_model=list[FieldChangeResponse])
async def compare_versions(
    subject_id: str,
    caller_id: CallerId,
    services: Services,
    version_from: int = Query(..., alias="from", description="Base version"),
    version_to: int = Query(..., alias="to", description="Target version"),
) -> list[FieldChangeResponse]:
    try:
        changes = await services.history.compare_versions(
            subject_id, version_from, version_to, caller_id=caller_id
        )
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    except InvalidVersionError as exc:
        raise _unprocessable(exc) from exc
    except OperationFailedError as exc:
        raise _operation_failed() from exc
    return [FieldChangeResponse.from_change(change) for change in changes]


@router.get("/subjects/{subject_id}/export")
async def export_history(
    subject_id: str,
    caller_id: CallerId,
    services: Services,
    export_format: Literal["json", "csv"] = Query("json", alias="format"),
) -> Response:
    try:
        content = await services.history.export(subject_id, export_format, caller_id=caller_id)
    except OperationFailedError as exc:
        raise _operation_failed() from exc
    return Response(
        content=content,
        media_type=_EXPORT_MEDIA_TYPES[export_format],
        headers={
            "Content-Disposition": (
                f'attachment; filename="historico_{subject_id}.{export_format}"'
            )
        },
    )


@router.get("/subjects/{subject_id}/verify", response_model=ChainVerificationResponse)
async def verify_chain(
    subject_id: str,
    _admin: AdminId,
    services: Services,
) -> ChainVerificationResponse:
    """Verify the hash chain of a subject's kept entries (admin only)."""
    result = await services.history.verify_chain(subject_id)
    return ChainVerificationResponse.from_result(subject_id, result)


@router.get("/statistics", response_model=StatisticsResponse)
async def get_statistics(
    _caller_id: CallerId,
    services: Services,
    tenant_id: str | None = Query(None),
) -> StatisticsResponse:
    try:
        stats = await services.history.statistics(tenant_id)
    except StoreUnavailableError as exc:
        raise _store_unavailable() from exc
    return StatisticsResponse.from_statistics(stats)


# -----------------------------------------------------------------------------
# Administration
# -----------------------------------------------------------------------------


@router.get("/configuration", response_model=AuditConfigurationResponse)
async def get_configuration(
    _admin: AdminId,
    services: Services,
    tenant_id: str | None = Query(None),
) -> AuditConfigurationResponse:
    config = await services.history.get_configuration(tenant_id)
    return AuditConfigurationResponse.from_config(config)


@router.put("/configuration", response_model=AuditConfigurationResponse)
async def save_configuration(
    body: AuditConfigurationUpdate,
    admin_id: AdminId,
    services: Services,
    tenant_id: str | None = Query(None),
) -> AuditConfigurationResponse:
    config = AuditConfiguration(
        tenant_id=tenant_id or services.settings.default_tenant_id,
        retention_days=body.retention_days,
        max_versions_per_subject=body.max_versions_per_subject,
        audited_fields=body.audited_fields,
        notify_on_change=body.notify_on_change,
        notification_recipients=body.notification_recipients,
    )
    saved = await services.history.save_configuration(config)
    logger.info("audit_configuration_updated", tenant_id=saved.tenant_id, admin_id=admin_id)
    return AuditConfigurationResponse.from_config(saved)


@router.get("/access-events", response_model=list[AccessEventResponse])
async def list_access_events(
    _admin: AdminId,
    services: Services,
    user_id: str | None = Query(None),
    data_type: str | None = Query(None),
    action: AccessAction | None = Query(None),
    subject_id: str | None = Query(None),
    date_from: datetime | None = Query(None),
    date_to: datetime | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
) -> list[AccessEventResponse]:
    """Query access events, newest first (admin only)."""
    events = await services.audit_log.query(
        AccessEventFilter(
            user_id=user_id,
            data_type=data_type,
            action=action,
            subject_id=subject_id,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
        )
    )
    return [AccessEventResponse.from_event(event) for event in events]


@router.post("/maintenance/retention", response_model=RetentionResponse)
async def run_retention(
    admin_id: AdminId,
    services: Services,
    tenant_id: str | None = Query(None),
) -> RetentionResponse:
    try:
        report = await services.history.run_retention(tenant_id)
    except StoreUnavailableError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="History store unavailable",
        ) from exc
    logger.info("history_retention_triggered", tenant_id=report.tenant_id, admin_id=admin_id)
    return RetentionResponse.from_report(report)


@router.get("/keys", response_model=list[KeyInfoResponse])
async def list_keys(_admin: AdminId, services: Services) -> list[KeyInfoResponse]:
    return [KeyInfoResponse(**info) for info in services.encryption.key_info()]


@router.post("/keys/rotate", response_model=KeyInfoResponse)
async def rotate_key(
    admin_id: AdminId,
    services: Services,
    retire_after_days: int | None = Query(None, ge=0, le=3650),
) -> KeyInfoResponse:
    """Activate a new key version; earlier versions keep decrypting history."""
    key = services.encryption.rotate_key(retire_after_days=retire_after_days)
    logger.info("encryption_key_rotation_requested", admin_id=admin_id, version=key.version)
    return KeyInfoResponse(**key.info())


@router.get("/keys/health", response_model=KeyHealthResponse)
async def key_health(_admin: AdminId, services: Services) -> KeyHealthResponse:
    health = services.encryption.check_key_health(services.settings.key_rotation_days)
    return KeyHealthResponse(
        status=health.status,
        issues=health.issues,
        recommendations=health.recommendations,
    )
