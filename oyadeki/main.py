import asyncio
import os

from fastapi import FastAPI

from oyadeki.database import SessionLocal
from oyadeki.logging_config import get_logger, setup_logging
from oyadeki.routers import line_webhook
from oyadeki.services.session_store import sweep_expired_sessions

setup_logging(os.environ.get("LOG_LEVEL", "INFO"))

app = FastAPI(
    title="Oyadeki API",
    description="LINE bot backend: media identification and flea-market listing dialogues",
    version="0.1.0",
)

app.include_router(line_webhook.router)

sweeper_logger = get_logger("session_sweeper")
_sweeper_task: asyncio.Task | None = None


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_session_sweeper_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("SESSION_SWEEPER_ENABLED"), default=True)


def _get_sweep_interval_seconds() -> float:
    interval_seconds = float(os.environ.get("SESSION_SWEEP_INTERVAL_SECONDS", "300"))
    return max(interval_seconds, 1.0)


def run_session_sweep() -> int:
    db = SessionLocal()
    try:
        return sweep_expired_sessions(db)
    finally:
        db.close()


async def _session_sweeper_loop() -> None:
    while True:
        try:
            await asyncio.sleep(_get_sweep_interval_seconds())
            expired = await asyncio.to_thread(run_session_sweep)
            if expired:
                sweeper_logger.info("Session sweeper expired sessions", extra={"context": {"expired": expired}})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            sweeper_logger.error(
                "Session sweeper run failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_session_sweeper() -> None:
    global _sweeper_task
    if not _is_session_sweeper_enabled():
        return
    if _sweeper_task is None or _sweeper_task.done():
        _sweeper_task = asyncio.create_task(_session_sweeper_loop())
        sweeper_logger.info("Session sweeper started")


@app.on_event("shutdown")
async def stop_session_sweeper() -> None:
    global _sweeper_task
    if _sweeper_task is None:
        return
    _sweeper_task.cancel()
    try:
        await _sweeper_task
    except asyncio.CancelledError:
        pass
    _sweeper_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}
