from __future__ import annotations

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.responses import RedirectResponse

from clusterhooks import db
from clusterhooks.api import clusters
from clusterhooks.api.utils import register_exception_handlers
from clusterhooks.logging_config import configure_logging

configure_logging()


@asynccontextmanager
async def lifespan(_: FastAPI):
    db.init_db(db.engine)
    yield


app = FastAPI(
    title="Cluster Post Hooks",
    description="Runs post-provisioning hooks against freshly created Kubernetes clusters",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/", include_in_schema=False)
def root() -> RedirectResponse:
    """Redirect root URL to Swagger UI docs."""
    return RedirectResponse(url="/docs")


app.include_router(clusters.router)

register_exception_handlers(app)

if __name__ == "__main__":
    uvicorn.run("clusterhooks.main:app", host="0.0.0.0", port=8001, log_level="info")
