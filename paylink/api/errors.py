from fastapi import Request, status
from fastapi.responses import JSONResponse
import structlog

from paylink.errors import PaymentError

logger = structlog.get_logger()

STATUS_BY_CODE = {
    "NotFound": status.HTTP_404_NOT_FOUND,
    "AlreadySettled": status.HTTP_409_CONFLICT,
    "TransactionAlreadyUsed": status.HTTP_409_CONFLICT,
    "InvalidTransition": status.HTTP_409_CONFLICT,
    "Expired": status.HTTP_410_GONE,
    "Cancelled": status.HTTP_410_GONE,
}


def http_status_for(code: str, retryable: bool) -> int:
    if code in STATUS_BY_CODE:
        return STATUS_BY_CODE[code]
    if retryable:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_400_BAD_REQUEST


async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    status_code = http_status_for(exc.code, exc.retryable)
    logger.info("request_failed", path=request.url.path, code=exc.code, status_code=status_code)
    return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})
