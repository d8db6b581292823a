"""Reform Tracker FastAPI application."""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from reform_tracker.config import settings
from reform_tracker.database import AsyncSessionLocal, Base, async_engine
from reform_tracker.services.audit_service import AuditEntry, AuditSeverity, get_audit_recorder

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _system_event(action: str, details: dict | None = None) -> None:
    """Fire a system audit entry (non-blocking)."""
    get_audit_recorder().fire_and_forget(AuditEntry(
        user_id=None,
        action=action,
        resource="system",
        severity=AuditSeverity.INFO,
        details=details,
    ))


async def bootstrap(app: FastAPI) -> None:
    """Create tables and seed the default roles.

    Guards read the role table from the database on every request; nothing is
    cached on the application.
    """
    from reform_tracker import models  # noqa: F401  (register mappers)
    from reform_tracker.services.role_store import load_role_table, seed_default_roles

    if settings.DB_AUTO_CREATE:
        async with async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as db:
        await seed_default_roles(db)
        role_table = await load_role_table(db)
    logger.info("Role table in effect: %s", ", ".join(role_table.roles()))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Reform Tracker API...")

    try:
        await bootstrap(app)
    except Exception as e:
        logger.error(f"Startup bootstrap failed: {e}")

    _system_event("system_startup")
    logger.info("Reform Tracker API started successfully")
    yield

    # Shutdown
    _system_event("system_shutdown")
    await get_audit_recorder().drain()
    await async_engine.dispose()
    logger.info("Reform Tracker API shut down")


app = FastAPI(
    title="Reform Tracker",
    description="Police administration reform tracking: access control and audit trail",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Read-access audit middleware for sensitive endpoints
from reform_tracker.middleware.audit_middleware import AuditReadAccessMiddleware

app.add_middleware(
    AuditReadAccessMiddleware,
    recorder=get_audit_recorder(),
    prefixes=settings.AUDIT_SENSITIVE_PREFIXES,
)

# Import and register routers
from reform_tracker.routes import admin, auth, tasks

app.include_router(auth.router)
app.include_router(admin.router)
app.include_router(tasks.router)


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "Reform Tracker API", "version": "1.0.0"}
