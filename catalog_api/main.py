from fastapi import FastAPI

from catalog_sync.config import get_settings

from .routers import sync

settings = get_settings()
app = FastAPI(title="Catalog Sync", version="0.1.0")


@app.get("/health")
def healthcheck():
    return {"status": "ok", "env": settings.env}


app.include_router(sync.router, prefix="/sync", tags=["sync"])
