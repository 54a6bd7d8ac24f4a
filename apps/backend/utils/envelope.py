from fastapi.responses import JSONResponse

from apps.backend.services.loyalty.errors import CoreError, RetriesExhausted


def ok(data=None, meta=None, status: int = 200):
    return JSONResponse(
        status_code=status,
        content={
            "ok": True,
            "data": data,
            "meta": meta or {},
        },
    )


def error(e: CoreError):
    headers = None
    if isinstance(e, RetriesExhausted):
        headers = {"Retry-After": str(e.details.get("retry_after_seconds", 1))}
    return JSONResponse(status_code=e.status_code, content=e.to_dict(), headers=headers)
