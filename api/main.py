from __future__ import annotations

from pathlib import Path

from dotenv import load_dotenv

# Load the project-root .env explicitly
project_root = Path(__file__).parent.parent
env_path = project_root / ".env"
if env_path.exists():
    load_dotenv(env_path)

from fastapi import FastAPI  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402

from ingestion.settings import get_settings  # noqa: E402
from ingestion.utils.logging import configure_logging  # noqa: E402

from .database import init_db  # noqa: E402
from .routes import router  # noqa: E402

_settings = get_settings()
configure_logging(_settings.structlog_level, json_enabled=_settings.log_json)

app = FastAPI(title="News Pipeline Read API", version="0.1.0")

init_db()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
    expose_headers=["X-Data-Source", "X-Cache-Status", "X-Last-Updated"],
)

app.include_router(router)


@app.get("/healthz", tags=["system"])
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}
