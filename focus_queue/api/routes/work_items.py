from fastapi import APIRouter, Depends, HTTPException, status

from focus_queue.core.security import get_owner_principal
from focus_queue.schemas.work_items import (
    BackfillOut,
    BackfillRequest,
    EnsureWorkItemOut,
    EnsureWorkItemRequest,
    LinkEntityRequest,
    ReopenRequest,
    SnoozeRequest,
    StatusCountsOut,
    WorkItemOut,
)
from focus_queue.services.adapters import get_source_adapters
from focus_queue.services.repository import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)
from focus_queue.services.work_items import WorkItemService

router = APIRouter()


def get_work_item_service(
    repository=Depends(get_repository),
    adapters=Depends(get_source_adapters),
) -> WorkItemService:
    return WorkItemService(repository, adapters)


def _http_error(exc: RepositoryError) -> HTTPException:
    if isinstance(exc, RepositoryUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if isinstance(exc, RepositoryNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, RepositoryConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, RepositoryValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@router.get("/counts", response_model=StatusCountsOut)
async def get_status_counts(
    principal=Depends(get_owner_principal),
    service: WorkItemService = Depends(get_work_item_service),
) -> StatusCountsOut:
    try:
        counts = await service.status_counts(principal.owner_id)
    except RepositoryError as exc:
        raise _http_error(exc) from exc

    return StatusCountsOut(
        needs_review=counts.needs_review,
        snoozed=counts.snoozed,
        enriched_pending=counts.enriched_pending,
        trusted=counts.trusted,
        ignored=counts.ignored,
        all_clear=counts.all_clear,
    )


@router.post("", response_model=EnsureWorkItemOut)
async def ensure_work_item(
    payload: EnsureWorkItemRequest,
    principal=Depends(get_owner_principal),
    service: WorkItemService = Depends(get_work_item_service),
) -> EnsureWorkItemOut:
    try:
        result = await service.ensure_work_item(principal.owner_id, payload.source_type, payload.source_id)
    except RepositoryError as exc:
        raise _http_error(exc) from exc

    return EnsureWorkItemOut(work_item=WorkItemOut.model_validate(result.work_item), is_new=result.is_new)


@router.post("/backfill", response_model=BackfillOut)
async def backfill_work_items(
    payload: BackfillRequest,
    principal=Depends(get_owner_principal),
    service: WorkItemService = Depends(get_work_item_service),
) -> BackfillOut:
    try:
        created = await service.backfill(principal.owner_id, payload.sources)
    except RepositoryError as exc:
        raise _http_error(exc) from exc

    return BackfillOut(created=created)


@router.post("/{work_item_id}/trust", response_model=WorkItemOut)
async def trust_work_item(
    work_item_id: str,
    principal=Depends(get_owner_principal),
    service: WorkItemService = Depends(get_work_item_service),
) -> WorkItemOut:
    try:
        item = await service.trust(principal.owner_id, work_item_id)
    except RepositoryError as exc:
        raise _http_error(exc) from exc

    return WorkItemOut.model_validate(item)


@router.post("/{work_item_id}/ignore", response_model=WorkItemOut)
async def ignore_work_item(
    work_item_id: str,
    principal=Depends(get_owner_principal),
    service: WorkItemService = Depends(get_work_item_service),
) -> WorkItemOut:
    try:
        item = await service.ignore(principal.owner_id, work_item_id)
    except RepositoryError as exc:
        raise _http_error(exc) from exc

    return WorkItemOut.model_validate(item)


@router.post("/{work_item_id}/snooze", response_model=WorkItemOut)
async def snooze_work_item(
    work_item_id: str,
    payload: SnoozeRequest,
    principal=Depends(get_owner_principal),
    service: WorkItemService = Depends(get_work_item_service),
) -> WorkItemOut:
    try:
        item = await service.snooze(principal.owner_id, work_item_id, payload.until)
    except RepositoryError as exc:
        raise _http_error(exc) from exc

    return WorkItemOut.model_validate(item)


@router.post("/{work_item_id}/reopen", response_model=WorkItemOut)
async def reopen_work_item(
    work_item_id: str,
    payload: ReopenRequest,
    principal=Depends(get_owner_principal),
    service: WorkItemService = Depends(get_work_item_service),
) -> WorkItemOut:
    try:
        item = await service.reopen(
            principal.owner_id,
            work_item_id,
            [code.value for code in payload.reason_codes],
        )
    except RepositoryError as exc:
        raise _http_error(exc) from exc

    return WorkItemOut.model_validate(item)


@router.post("/{work_item_id}/links", response_model=WorkItemOut)
async def link_work_item(
    work_item_id: str,
    payload: LinkEntityRequest,
    principal=Depends(get_owner_principal),
    service: WorkItemService = Depends(get_work_item_service),
) -> WorkItemOut:
    try:
        item = await service.link_entity(
            principal.owner_id,
            work_item_id,
            target_type=payload.target_type,
            target_id=payload.target_id,
        )
    except RepositoryError as exc:
        raise _http_error(exc) from exc

    return WorkItemOut.model_validate(item)
