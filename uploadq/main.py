from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from uploadq import __version__
from uploadq.core.config import settings
from uploadq.routes import uploads

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("upload_api_starting", bucket=settings.BUCKET_NAME, endpoint=settings.BUCKET_ENDPOINT)
    yield
    logger.info("upload_api_stopping")


app = FastAPI(
    title="Multipart Upload API",
    description="Allocates, finalizes and aborts S3 multipart upload sessions",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(uploads.router)


@app.get("/health")
async def health():
    return {"status": "ok", "service": settings.APP_NAME, "version": __version__}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("uploadq.main:app", host="0.0.0.0", port=8000)
