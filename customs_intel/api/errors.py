"""
HTTP mapping for pipeline and store failures.
"""

import math

from fastapi import HTTPException, status

from customs_intel.pipeline.batch_extractor import PipelineError
from customs_intel.storage.stores import StoreError

_STATUS_BY_CODE = {
    "ERR_PDF_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "ERR_RUN_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "ERR_SOURCE_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "ERR_RUN_CLOSED": status.HTTP_409_CONFLICT,
    "ERR_INVALID_TRANSITION": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "ERR_BAD_REQUEST": status.HTTP_400_BAD_REQUEST,
    "ERR_RATE_LIMITED": status.HTTP_503_SERVICE_UNAVAILABLE,
    "ERR_EXTRACTION_FAILED": status.HTTP_502_BAD_GATEWAY,
}


def pipeline_http_error(error: PipelineError) -> HTTPException:
    headers = None
    if error.error_code == "ERR_RATE_LIMITED":
        retry_after = error.retry_after if error.retry_after is not None else 30
        headers = {"Retry-After": str(max(1, math.ceil(retry_after)))}
    return HTTPException(
        status_code=_STATUS_BY_CODE.get(error.error_code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail={"error_code": error.error_code, "message": error.message, "run_id": error.run_id},
        headers=headers,
    )


def store_http_error(error: StoreError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error_code": "ERR_STORE", "message": error.message, "operation": error.operation},
    )
