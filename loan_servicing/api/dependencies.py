"""
Request dependencies and domain error translation
"""

from typing import Optional

from fastapi import Header, HTTPException, Request

from ..errors import (
    DuplicateTransactionError, InvalidStatusError, LoanServicingError, NotFoundError,
    ProcessingError, ValidationError
)
from ..system import LoanServicingSystem


def get_system(request: Request) -> LoanServicingSystem:
    system = request.app.state.system
    if system is None:
        system = LoanServicingSystem()
        request.app.state.system = system
    return system


def get_operator_id(x_operator_id: Optional[str] = Header(None)) -> Optional[str]:
    """Operator performing the action; authentication happens upstream"""
    return x_operator_id or None


def require_operator_id(x_operator_id: Optional[str] = Header(None)) -> str:
    if not x_operator_id:
        raise HTTPException(status_code=400, detail="X-Operator-Id header is required")
    return x_operator_id


def to_http_error(error: LoanServicingError) -> HTTPException:
    """Map a domain error to the matching HTTP status"""
    if isinstance(error, ValidationError):
        return HTTPException(status_code=400, detail=str(error))
    elif isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    elif isinstance(error, (InvalidStatusError, DuplicateTransactionError)):
        return HTTPException(status_code=409, detail=str(error))
    elif isinstance(error, ProcessingError):
        return HTTPException(status_code=500, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))
