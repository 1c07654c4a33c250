"""FastAPI application entrypoint. No business logic; only wiring and middleware."""

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sastscan.api.v1 import router as v1_router
from sastscan.core.config import get_settings

settings = get_settings()

app = FastAPI(
    title="SAST Scan API",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)
app.state.temporal_client = None

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.APP_ENV == "dev" else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(v1_router, prefix=settings.API_V1_PREFIX)


@app.get("/")
def root() -> dict[str, str]:
    """Root route; minimal payload for discovery."""
    return {"message": "SAST Scan API"}
