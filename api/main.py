from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from shared.config import get_settings, settings_dict
from shared.db import init_db
from shared.logs import configure_logging

from .routes import admin, compliance, tryon, uploads

configure_logging(get_settings().log_level)


description = """
Virtual Try-On API.

Shoppers submit a product together with their own photo or a curated preset
image and receive a generated composite of themselves wearing it:
1. **storefront** endpoints accept try-on requests and list presets.
2. **admin** endpoints report usage, requests and cache state per store.
3. **uploads** serves stored result images.
4. **compliance** hooks purge or redact store data.
"""


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Virtual Try-On API",
    description=description,
    version="0.1.0",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "storefront", "description": "Shopper-facing try-on endpoints"},
        {"name": "admin", "description": "Per-store usage and request history"},
        {"name": "uploads", "description": "Stored result images"},
        {"name": "compliance", "description": "Uninstall and privacy redaction hooks"},
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(tryon.router)
app.include_router(admin.router)
app.include_router(uploads.router)
app.include_router(compliance.router)


@app.get("/health", tags=["meta"])
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/settings", tags=["meta"])
def settings() -> dict:
    return settings_dict()
