"""FastAPI application: the conversion API, CORS for the browser client, and ledger setup."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from compressor.api.routes import router
from compressor.config import CORS_ORIGINS, logger as config_logger
from compressor.conversion.backend import PillowBackend
from compressor.conversion.models import OutputFormat
from compressor.conversion.service import get_conversion_service
from compressor.db import init_db

logging.getLogger("uvicorn").setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    encoders = [f.value for f in OutputFormat if f != OutputFormat.JPEG_HIGH and PillowBackend.supports(f)]
    config_logger.info("Compressor API started; encoders available: %s", ", ".join(encoders) or "none")
    yield
    closed = get_conversion_service().close_all()
    config_logger.info("Compressor API stopped; released %d open session(s)", closed)


app = FastAPI(
    title="Convert & Compress API",
    description="Resize and recompress a single image to JPEG, PNG or WebP with before/after size accounting.",
    version="1.0.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS if CORS_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Session-ID", "Content-Disposition"],
)


async def session_header_middleware(request, call_next):
    """Echo a newly opened conversion session's id so browser clients can address it."""
    response = await call_next(request)
    session_id = getattr(request.state, "session_id", None)
    if session_id:
        response.headers["X-Session-ID"] = session_id
    return response


app.middleware("http")(session_header_middleware)
app.include_router(router)


def run() -> None:
    import uvicorn
    from compressor.config import HOST, PORT
    uvicorn.run("compressor.main:app", host=HOST, port=PORT)


if __name__ == "__main__":
    run()
