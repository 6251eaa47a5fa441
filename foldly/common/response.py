from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from foldly.core.errors import ErrorKind, FoldlyError

def success(data=None, status_code: int = 200):
    return JSONResponse(
        status_code=status_code,
        content={"success": True, "data": jsonable_encoder(data)},
    )

def fail(kind: ErrorKind, message: str = "", status_code: int = 400, details: dict | None = None,
         blocked: bool = False, retry_after: int | None = None):
    content = {"success": False, "error": kind.value, "message": message or kind.value}
    if details:
        content["details"] = jsonable_encoder(details)
    if blocked:
        content["blocked"] = True
        content["retryAfter"] = retry_after
    return JSONResponse(status_code=status_code, content=content)

def from_error(exc: FoldlyError):
    return fail(exc.kind, exc.message, status_code=exc.status_code, details=exc.details)
