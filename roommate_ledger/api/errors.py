"""
Mapping from ledger exceptions to HTTP errors.
"""

from fastapi import HTTPException

from roommate_ledger.exceptions import (
    InvalidRequest,
    LedgerError,
    Malformed,
    NotFound,
    PermissionDenied,
    TransientConflict,
)

ERROR_STATUS: dict[type[LedgerError], int] = {
    NotFound: 404,
    PermissionDenied: 403,
    InvalidRequest: 400,
    TransientConflict: 409,
    Malformed: 500,
}


def http_error(e: LedgerError) -> HTTPException:
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(e, error_type):
            return HTTPException(status_code=status_code, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))
