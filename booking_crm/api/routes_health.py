import asyncio
import logging
import time
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


def _circuit_check(request: Request) -> tuple[bool, dict[str, Any]]:
    from booking_crm.infra.stripe_client import stripe_circuit

    services = getattr(request.app.state, "services", None)
    states = {"stripe": stripe_circuit.state}
    breaker = getattr(getattr(services, "calendar", None), "_breaker", None)
    if breaker is not None:
        states["calendar"] = breaker.state
    return all(state != "open" for state in states.values()), {"circuits": states}


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    checks = []
    for name, check in (("db", lambda: _db_check(request)),):
        start = time.perf_counter()
        ok, detail = await check()
        checks.append({"name": name, "ok": ok, "ms": round((time.perf_counter() - start) * 1000, 2), "detail": detail})
    ok, detail = _circuit_check(request)
    checks.append({"name": "circuits", "ok": ok, "ms": 0.0, "detail": detail})

    overall_ok = checks[0]["ok"]
    return JSONResponse(status_code=200 if overall_ok else 503, content={"ok": overall_ok, "checks": checks})
