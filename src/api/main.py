"""Call Transcription API - speech-to-text job service.

This API runs long-running transcription jobs against external providers:
- Audio upload and job submission (Azure batch, OpenAI Whisper, Azure OpenAI Whisper)
- Progress polling, cancellation and retry
- Provider config validation and connection tests
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src import __version__
from src.api.routes import transcriptions
from src.transcription.db import SnapshotStore
from src.transcription.orchestrator import TranscriptionOrchestrator
from src.transcription.settings import ProfileRegistry, get_profile_registry

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(
    orchestrator: Optional[TranscriptionOrchestrator] = None,
    profiles: Optional[ProfileRegistry] = None,
) -> FastAPI:
    """Build the app. Tests pass their own orchestrator and profiles."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        logger.info("Loading transcription profiles...")
        profile_registry = profiles or get_profile_registry()
        logger.info(f"Loaded {profile_registry.count()} profiles")
        app.state.profiles = profile_registry

        app.state.orchestrator = orchestrator or TranscriptionOrchestrator(store=SnapshotStore())
        recovered = app.state.orchestrator.recover_interrupted()
        if recovered:
            logger.warning(f"Marked {len(recovered)} interrupted job(s) as failed")

        logger.info("Call Transcription API ready")
        yield
        # Shutdown
        logger.info("Shutting down Call Transcription API")
        await app.state.orchestrator.aclose()

    app = FastAPI(
        title="Call Transcription API",
        description="""
## Transcription Job Service

Submit call audio to a speech provider and follow the job to completion.

### Key Endpoints

- `POST /v1/transcriptions/jobs` - Upload audio (multipart `file` + `config` JSON)
- `GET /v1/transcriptions/jobs/{job_id}` - Poll status, progress and result
- `POST /v1/transcriptions/jobs/{job_id}/cancel` - Cancel a running job
- `POST /v1/transcriptions/jobs/{job_id}/retry` - Retry a failed job
- `POST /v1/transcriptions/validate` - Check a provider config
""",
        version=__version__,
        lifespan=lifespan,
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(transcriptions.router, prefix="/v1")

    @app.get("/")
    async def root():
        """Root endpoint with API info."""
        return {
            "service": "Call Transcription API",
            "version": __version__,
            "docs": "/docs",
            "endpoints": {
                "jobs": "/v1/transcriptions/jobs",
                "stats": "/v1/transcriptions/stats",
                "profiles": "/v1/transcriptions/profiles",
            },
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        stats = app.state.orchestrator.get_statistics()
        return {
            "status": "healthy",
            "version": __version__,
            "jobs_active": stats.active,
            "jobs_total": stats.total,
            "profiles_loaded": app.state.profiles.count(),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
