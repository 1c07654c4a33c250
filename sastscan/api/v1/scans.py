"""Scan endpoints: start a repository scan, poll its status, fetch its results, cancel it."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request
from temporalio.client import Client

from sastscan.core.config import Settings, get_settings
from sastscan.core.database import get_session_factory
from sastscan.schemas.scan import (
    ScanCreateRequest,
    ScanResultsResponse,
    ScanStartResponse,
    ScanStatusResponse,
)
from sastscan.services.persistence import PersistenceError, PersistenceGateway, ScanNotFound
from sastscan.services.scan_service import (
    InvalidRepositoryUrl,
    ScanNotCancelable,
    ScanService,
    WorkflowUnavailable,
)

logger = logging.getLogger(__name__)

router = APIRouter()


async def get_temporal_client(request: Request) -> Client:
    """Temporal client shared on app.state; connected on first use so the API starts without Temporal."""
    client = getattr(request.app.state, "temporal_client", None)
    if client is not None:
        return client
    settings = get_settings()
    try:
        client = await Client.connect(settings.TEMPORAL_HOST, namespace=settings.TEMPORAL_NAMESPACE)
    except RuntimeError as e:
        logger.error("Failed to connect to Temporal at %s: %s", settings.TEMPORAL_HOST, e)
        raise HTTPException(
            status_code=503,
            detail="Workflow engine is unavailable. Try again later.",
        ) from e
    request.app.state.temporal_client = client
    return client


def get_scan_service(
    client: Annotated[Client, Depends(get_temporal_client)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> ScanService:
    return ScanService(settings, PersistenceGateway(get_session_factory()), client)


def get_scan_reader(settings: Annotated[Settings, Depends(get_settings)]) -> ScanService:
    """Read-only scan service; status and results do not need the workflow engine."""
    return ScanService(settings, PersistenceGateway(get_session_factory()))


def _load_error(e: Exception) -> HTTPException:
    if isinstance(e, ScanNotFound):
        return HTTPException(status_code=404, detail=e.message)
    return HTTPException(status_code=503, detail="Scan store is unavailable. Try again later.")


@router.post("", response_model=ScanStartResponse, status_code=202)
async def start_scan(
    body: ScanCreateRequest,
    service: Annotated[ScanService, Depends(get_scan_service)],
) -> ScanStartResponse:
    """
    Start a scan of a public repository.

    Returns the scan id and the workflow run id immediately; poll
    GET /scans/{scan_id} for progress.
    """
    try:
        return await service.start_scan(body)
    except InvalidRepositoryUrl as e:
        raise HTTPException(status_code=422, detail=e.message) from e
    except WorkflowUnavailable as e:
        raise HTTPException(status_code=503, detail=e.message) from e
    except PersistenceError as e:
        logger.error("Failed to record scan: %s", e.message)
        raise HTTPException(status_code=503, detail="Scan store is unavailable. Try again later.") from e


@router.get("/{scan_id}", response_model=ScanStatusResponse)
def get_scan_status(
    scan_id: str,
    service: Annotated[ScanService, Depends(get_scan_reader)],
) -> ScanStatusResponse:
    try:
        return service.get_scan_status(scan_id)
    except (ScanNotFound, PersistenceError) as e:
        raise _load_error(e) from e


@router.get("/{scan_id}/results", response_model=ScanResultsResponse)
def get_scan_results(
    scan_id: str,
    service: Annotated[ScanService, Depends(get_scan_reader)],
) -> ScanResultsResponse:
    """Findings grouped by OWASP category. Empty with a message until the scan has completed."""
    try:
        return service.get_scan_results(scan_id)
    except (ScanNotFound, PersistenceError) as e:
        raise _load_error(e) from e


@router.post("/{scan_id}/cancel", response_model=ScanStatusResponse, status_code=202)
async def cancel_scan(
    scan_id: str,
    service: Annotated[ScanService, Depends(get_scan_service)],
) -> ScanStatusResponse:
    try:
        return await service.cancel_scan(scan_id)
    except ScanNotCancelable as e:
        raise HTTPException(status_code=409, detail=e.message) from e
    except WorkflowUnavailable as e:
        raise HTTPException(status_code=503, detail=e.message) from e
    except (ScanNotFound, PersistenceError) as e:
        raise _load_error(e) from e
