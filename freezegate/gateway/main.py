from __future__ import annotations

import logging
import os

from fastapi import FastAPI

from freezegate import __version__
from freezegate.config.settings import settings
from freezegate.gateway.routers import events

app = FastAPI(title="freezegate", version=__version__)

app.include_router(events.router)


@app.get("/healthz")
async def healthz():
    return {"ok": True}


if __name__ == "__main__":
    import uvicorn  # type: ignore

    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("FREEZEGATE_PORT", "8080")))
