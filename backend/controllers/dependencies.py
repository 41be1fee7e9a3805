"""Shared FastAPI dependency providers and error translation for controllers."""

from __future__ import annotations

from typing import Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.domain.errors import AllocationError, ErrorKind
from backend.services.allocation_service import AllocationEngine
from backend.services.auth_service import (
    AdminTokenNotConfiguredError,
    AuthService,
    InvalidAdminTokenError,
)
from backend.services.inventory_service import InventoryService
from backend.services.ledger_service import OccupancyLedgerService
from backend.services.matching_service import MatchingService
from backend.services.release_service import ReleaseService
from backend.services.request_service import RequestService
from backend.utils.config import get_settings


bearer_scheme = HTTPBearer(auto_error=False)

ERROR_STATUS: dict[ErrorKind, int] = {
    ErrorKind.ROOM_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.ACCOMMODATION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.REQUEST_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.BED_UNAVAILABLE: status.HTTP_409_CONFLICT,
    ErrorKind.CAPACITY_EXCEEDED: status.HTTP_409_CONFLICT,
    ErrorKind.INVALID_REQUEST_STATE: status.HTTP_409_CONFLICT,
    ErrorKind.STUDENT_ALREADY_ALLOCATED: status.HTTP_409_CONFLICT,
    ErrorKind.ALREADY_PROCESSED: status.HTTP_409_CONFLICT,
    ErrorKind.CONCURRENCY_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.DUPLICATE_REQUEST: status.HTTP_409_CONFLICT,
    ErrorKind.INVENTORY_VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.PERSISTENCE_FAILURE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def to_http_error(exc: AllocationError) -> HTTPException:
    return HTTPException(
        status_code=ERROR_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail=exc.to_dict(),
    )


def _state_service(request: Request, name: str, label: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} is not initialized",
        )
    return service


def get_auth_service(request: Request) -> AuthService:
    service = getattr(request.app.state, "auth_service", None)
    if service is None:
        service = AuthService(settings=get_settings())
        request.app.state.auth_service = service
    return service


def get_inventory_service(request: Request) -> InventoryService:
    return _state_service(request, "inventory_service", "Inventory service")


def get_request_service(request: Request) -> RequestService:
    return _state_service(request, "request_service", "Request service")


def get_allocation_engine(request: Request) -> AllocationEngine:
    return _state_service(request, "allocation_engine", "Allocation engine")


def get_release_service(request: Request) -> ReleaseService:
    return _state_service(request, "release_service", "Release service")


def get_ledger_service(request: Request) -> OccupancyLedgerService:
    return _state_service(request, "ledger_service", "Ledger service")


def get_matching_service(request: Request) -> MatchingService:
    return _state_service(request, "matching_service", "Matching service")


async def require_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    auth_service: AuthService = Depends(get_auth_service),
) -> None:
    if not auth_service.auth_enabled:
        return
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header with Bearer token is required",
        )
    try:
        auth_service.validate_bearer_token(credentials.credentials)
    except (AdminTokenNotConfiguredError, InvalidAdminTokenError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
