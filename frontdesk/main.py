import asyncio
import os

from fastapi import FastAPI, Request

from frontdesk import __version__
from frontdesk.config import settings
from frontdesk.logging_config import get_logger, setup_logging
from frontdesk.routers import webhook
from frontdesk.services.pipeline import build_pipeline

setup_logging(settings.log_level, instance=settings.bot_instance)

app = FastAPI(
    title="Frontdesk Bot",
    description="WhatsApp front desk for a property-management company",
    version=__version__,
)

app.include_router(webhook.router)

sweep_logger = get_logger("sweep_worker")
_sweep_worker_task: asyncio.Task | None = None


def _is_sweep_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.sweep_worker_enabled


async def _sweep_worker_loop() -> None:
    while True:
        try:
            await asyncio.sleep(max(settings.sweep_interval_seconds, 1.0))
            pipeline = getattr(app.state, "pipeline", None)
            if pipeline is None:
                continue
            await pipeline.sweep()
        except asyncio.CancelledError:
            break
        except Exception as exc:
            sweep_logger.error(
                "Sweep worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_pipeline() -> None:
    global _sweep_worker_task
    if getattr(app.state, "pipeline", None) is None:
        app.state.pipeline = build_pipeline(settings)
    if not _is_sweep_worker_enabled():
        return
    if _sweep_worker_task is None or _sweep_worker_task.done():
        _sweep_worker_task = asyncio.create_task(_sweep_worker_loop())
        sweep_logger.info("Sweep worker started")


@app.on_event("shutdown")
async def stop_pipeline() -> None:
    global _sweep_worker_task
    if _sweep_worker_task is not None:
        _sweep_worker_task.cancel()
        try:
            await _sweep_worker_task
        except asyncio.CancelledError:
            pass
        _sweep_worker_task = None
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is not None:
        await pipeline.shutdown()


@app.get("/health")
async def health(request: Request):
    pipeline = getattr(request.app.state, "pipeline", None)
    return {
        "status": "ok",
        "instance": settings.bot_instance,
        "sessions": len(pipeline.sessions) if pipeline is not None else 0,
    }
