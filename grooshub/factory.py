"""
FastAPI application factory.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import get_settings
from .core.database import init_db, close_db
from .core.encryption import EncryptionError, EncryptionNotConfiguredError
from .core.redis import close_redis
from .api.router import router

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="GroosHub Memory",
        description="Conversation summaries, user and project memory",
        version="1.0.0",
        docs_url="/docs" if settings.env == "development" else None,
        redoc_url="/redoc" if settings.env == "development" else None,
    )

    # ── CORS ─────────────────────────────────────────────────────
    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins if origins != ["*"] else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Errors ───────────────────────────────────────────────────
    @app.exception_handler(EncryptionError)
    async def encryption_error(request: Request, exc: EncryptionError):
        # Stored ciphertext we cannot open is a server problem, never a client one
        if isinstance(exc, EncryptionNotConfiguredError):
            logger.error("Encrypted data requested but no master key configured: %s", request.url.path)
        else:
            logger.error("Decryption failed on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": "Stored data could not be decrypted"})

    # ── Startup ──────────────────────────────────────────────────
    @app.on_event("startup")
    async def on_startup():
        logging.basicConfig(
            level=getattr(logging, settings.log_level.upper(), logging.INFO),
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
        logger.info("Starting GroosHub Memory (env=%s)", settings.env)

        await init_db()

        from .tools.registry import init_tools
        init_tools()

        from .core.encryption import is_encryption_configured
        from .core.flags import get_flags
        flags = get_flags()
        logger.info(
            "Flags: auth0=%s redis=%s llm=%s summarization=%s memory=%s project_memory=%s",
            flags.use_auth0, flags.use_redis, flags.llm_provider,
            flags.enable_summarization, flags.enable_memory, flags.enable_project_memory,
        )
        if not is_encryption_configured():
            logger.warning("ENCRYPTION_MASTER_KEY not set — memory and summaries stored in plaintext")

        logger.info("GroosHub Memory is ready")

    # ── Shutdown ─────────────────────────────────────────────────
    @app.on_event("shutdown")
    async def on_shutdown():
        from .services.llm import close_client
        await close_client()
        await close_db()
        await close_redis()
        logger.info("GroosHub Memory shut down")

    # ── Routes ───────────────────────────────────────────────────
    app.include_router(router)

    return app
