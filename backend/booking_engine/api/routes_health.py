import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import text

router = APIRouter()
logger = logging.getLogger(__name__)

_DB_CHECK_TIMEOUT_SECONDS = 2.0


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.head("/healthz")
async def healthz_head() -> Response:
    return Response(status_code=200)


async def _db_check(request: Request) -> tuple[bool, dict[str, Any]]:
    session_factory = getattr(request.app.state, "db_session_factory", None)
    if session_factory is None:
        return False, {"message": "database session factory unavailable"}

    async def _ping_db():
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))

    try:
        await asyncio.wait_for(_ping_db(), timeout=_DB_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        return False, {"message": "database check timed out", "timeout_seconds": _DB_CHECK_TIMEOUT_SECONDS}
    except Exception as exc:  # noqa: BLE001
        logger.debug("database_check_failed", exc_info=exc)
        return False, {"message": "database check failed", "error": exc.__class__.__name__}
    return True, {"message": "database reachable"}


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    ok, detail = await _db_check(request)
    payload = {"ok": ok, "checks": [{"name": "db", "ok": ok, "detail": detail}]}
    return JSONResponse(status_code=200 if ok else 503, content=payload)
