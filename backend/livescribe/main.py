import asyncio
import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from livescribe.api.conversations import router as conversations_router
from livescribe.api.corrections import router as corrections_router
from livescribe.core.config import TRANSCRIPTION_PROVIDER
from livescribe.runtime import get_runtime
from livescribe.system_metrics import get_metrics_snapshot
from livescribe.transcription.providers import available_providers

app = FastAPI(title="Livescribe")
logger = logging.getLogger("livescribe.main")


def _get_allowed_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if not raw:
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]
    return [item.strip() for item in raw.split(",") if item.strip()]


_allowed_origins = _get_allowed_origins()

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=False,
)

CONVERSATION_CLEANUP_TTL_SEC = max(60, int(os.getenv("CONVERSATION_CLEANUP_TTL_SEC", "1800")))
CONVERSATION_CLEANUP_INTERVAL_SEC = max(30, int(os.getenv("CONVERSATION_CLEANUP_INTERVAL_SEC", "120")))
_background_tasks: list[asyncio.Task] = []


@app.on_event("startup")
async def startup():
    runtime = get_runtime()
    loaded = await runtime.engine.load()
    logger.info("[SYSTEM] corrections loaded=%s provider=%s", loaded, TRANSCRIPTION_PROVIDER)
    logger.info("[SYSTEM] CORS allow_origins=%s", _allowed_origins)

    async def _cleanup_loop():
        while True:
            await asyncio.sleep(CONVERSATION_CLEANUP_INTERVAL_SEC)
            removed = runtime.coordinator.registry.cleanup_inactive(CONVERSATION_CLEANUP_TTL_SEC)
            if removed > 0:
                logger.info("[SYSTEM] cleaned inactive conversations=%s", removed)

    async def _bus_listen():
        try:
            await runtime.bus.listen()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("[SYSTEM] fragment bus listener stopped: %s", exc)

    _background_tasks.append(asyncio.create_task(_cleanup_loop()))
    _background_tasks.append(asyncio.create_task(_bus_listen()))


@app.on_event("shutdown")
async def shutdown():
    for task in _background_tasks:
        task.cancel()
    await asyncio.gather(*_background_tasks, return_exceptions=True)
    _background_tasks.clear()
    await get_runtime().coordinator.shutdown()
    logger.info("[SYSTEM] shutdown complete")


@app.get("/healthz")
async def healthz():
    return {"status": "ok", "service": "livescribe"}


@app.get("/metrics")
async def metrics():
    runtime = get_runtime()
    return get_metrics_snapshot(extra={
        "active_conversations": len(runtime.coordinator.registry.active_ids()),
        "correction_generation": runtime.engine.generation,
    })


@app.get("/api/providers")
async def providers():
    return {"providers": available_providers()}


app.include_router(conversations_router)
app.include_router(corrections_router)
