import logging
import re
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pymongo.errors import PyMongoError

import database
from config import settings
from errors import register_error_handlers
from routers import admin, applications, auth, contracts, developers, employers, jobs, messages, proxy, reviews, showcases

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

APP_NAME = "Devlink"


def origin_regex(origins: List[str]) -> Optional[str]:
    """Turn ``*`` and ``https://*.example.com`` entries into one origin regex."""
    patterns = []
    for origin in origins:
        if origin == "*":
            patterns.append(r".*")
        elif "*" in origin:
            patterns.append(re.escape(origin).replace(r"\*", r"[^/]+"))
    return "^(" + "|".join(patterns) + ")$" if patterns else None


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings.require()
    db = database.connect(settings)
    database.ensure_indexes(db)
    yield
    database.close()
    logger.info("MongoDB connection closed")


app = FastAPI(title=f"{APP_NAME} API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o for o in settings.cors_origins if "*" not in o],
    allow_origin_regex=origin_regex(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

maintenance = [Depends(admin.check_maintenance)]
app.include_router(auth.router, prefix="/api/auth", dependencies=maintenance)
app.include_router(developers.router, prefix="/api/developers", dependencies=maintenance)
app.include_router(employers.router, prefix="/api/employers", dependencies=maintenance)
app.include_router(jobs.router, prefix="/api/jobs", dependencies=maintenance)
app.include_router(applications.router, prefix="/api/applications", dependencies=maintenance)
app.include_router(contracts.router, prefix="/api/contracts", dependencies=maintenance)
app.include_router(messages.router, prefix="/api/messages", dependencies=maintenance)
app.include_router(reviews.router, prefix="/api/reviews", dependencies=maintenance)
app.include_router(showcases.router, prefix="/api/showcases", dependencies=maintenance)
app.include_router(proxy.router, prefix="/api/proxy", dependencies=maintenance)
app.include_router(admin.router, prefix="/api/admin")

# ----------------------- Routes -----------------------

@app.get("/")
def root():
    return {"message": f"{APP_NAME} Backend Running"}


@app.get("/api/health")
def health():
    response = {"status": "ok", "database": "not configured", "collections": []}
    if database.db is None:
        return response
    try:
        response["collections"] = database.db.list_collection_names()[:10]
        response["database"] = "connected"
    except PyMongoError as e:
        logger.warning("Health check could not reach MongoDB: %s", e)
        response["database"] = "unreachable"
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)
