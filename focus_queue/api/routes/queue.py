from fastapi import APIRouter, Depends, HTTPException, Query, status

from focus_queue.core.config import Settings, get_settings
from focus_queue.core.security import get_owner_principal
from focus_queue.schemas.queue import QueueOut
from focus_queue.services.adapters import get_source_adapters
from focus_queue.services.queue import FocusQueueService, QueueOptions
from focus_queue.services.records import EffortEstimate, ReasonCode, SourceType
from focus_queue.services.repository import RepositoryUnavailableError, get_repository
from focus_queue.services.writeback import get_writeback_queue

router = APIRouter()


def get_focus_queue_service(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    adapters=Depends(get_source_adapters),
    writeback=Depends(get_writeback_queue),
) -> FocusQueueService:
    return FocusQueueService(repository, adapters, writeback, scoring_variant=settings.scoring_variant)


@router.get("", response_model=QueueOut)
async def read_queue(
    principal=Depends(get_owner_principal),
    settings: Settings = Depends(get_settings),
    service: FocusQueueService = Depends(get_focus_queue_service),
    max_items: int | None = Query(default=None, ge=1, le=100),
    max_per_source: int | None = Query(default=None, ge=1, le=100),
    min_score: float | None = Query(default=None, ge=0.0, le=1.0),
    diversity: bool | None = Query(default=None),
    source_type: list[SourceType] | None = Query(default=None),
    reason_code: list[ReasonCode] | None = Query(default=None),
    effort: EffortEstimate | None = Query(default=None),
) -> QueueOut:
    options = QueueOptions.from_settings(settings)
    if max_items is not None:
        options.max_items = max_items
    if max_per_source is not None:
        options.max_per_source = max_per_source
    if min_score is not None:
        options.min_score = min_score
    if diversity is not None:
        options.diversity = diversity
    options.source_types = list(source_type or [])
    options.reason_codes = [code.value for code in reason_code or []]
    options.effort = effort

    try:
        snapshot = await service.read(principal.owner_id, options)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return QueueOut.from_snapshot(snapshot)
