from fastapi import APIRouter, Depends, Query, Request
from typing import Optional, Dict, Any, List
from pydantic import BaseModel
import logging

from optracker.models.operation import OperationFilter, OperationRecord, OperationState
from optracker.services.operations_service import MAX_PAGE_SIZE, OperationsService

class CreateOperationRequest(BaseModel):
    """Request model for starting an operation."""
    kind: str
    metadata: Optional[Any] = None
    params: Optional[Dict[str, Any]] = None

class ListOperationsResponse(BaseModel):
    operations: List[OperationRecord]
    next_page_token: Optional[str] = None

logger = logging.getLogger(__name__)
router = APIRouter()


def get_operations_service(request: Request) -> OperationsService:
    return request.app.state.operations_service


@router.post("/operations", response_model=OperationRecord)
async def create_operation(body: CreateOperationRequest,
                           service: OperationsService = Depends(get_operations_service)):
    """
    Start a long-running operation.
    Returns the RUNNING record immediately; poll it by id.
    """
    record = await service.create(body.kind, metadata=body.metadata, params=body.params)
    logger.info(f"Created operation: {record.id} ({record.kind})")
    return record


@router.get("/operations", response_model=ListOperationsResponse)
async def list_operations(
    state: Optional[OperationState] = None,
    kind: Optional[str] = None,
    done: Optional[bool] = None,
    page_size: Optional[int] = Query(None, description=f"At most {MAX_PAGE_SIZE}; larger values are clamped"),
    page_token: Optional[str] = None,
    service: OperationsService = Depends(get_operations_service),
):
    """List operations one page at a time."""
    records, next_token = service.list(
        OperationFilter(state=state, kind=kind, done=done),
        page_size=page_size,
        page_token=page_token,
    )
    return ListOperationsResponse(operations=records, next_page_token=next_token)


@router.get("/operations/{operation_id}", response_model=OperationRecord)
async def get_operation(operation_id: str,
                        service: OperationsService = Depends(get_operations_service)):
    """Get the current state of an operation."""
    return service.get(operation_id)


@router.post("/operations/{operation_id}:cancel", response_model=OperationRecord)
@router.post("/operations/{operation_id}/cancel", response_model=OperationRecord)
async def cancel_operation(operation_id: str,
                           service: OperationsService = Depends(get_operations_service)):
    """
    Cancel an operation.
    Succeeds for operations that already finished; the record is returned as is.
    """
    record = service.cancel(operation_id)
    logger.info(f"Cancel requested for operation: {operation_id} (state={record.state.value})")
    return record


@router.delete("/operations/{operation_id}")
async def delete_operation(operation_id: str,
                           service: OperationsService = Depends(get_operations_service)):
    """Delete a finished operation."""
    service.delete(operation_id)
    return {"id": operation_id, "deleted": True}
