from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from inference_manager import __version__
from inference_manager.core.config import settings
from inference_manager.core.logging import logger
from inference_manager.dependencies.sessions import get_session_registry
from inference_manager.routers import sessions


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log configuration at startup; close every tunnel on shutdown."""
    logger.info(f"[bold green]Starting {settings.PROJECT_NAME}[/bold green]")
    logger.info(f"Debug mode: {settings.DEBUG}")
    logger.info(f"Log level: {settings.LOG_LEVEL}")
    logger.info("Configuration loaded:")
    logger.info(f"  [cyan]Default SLURM Host:[/cyan] {settings.SLURM_HOST}")
    logger.info(f"  [cyan]Template Directory:[/cyan] {settings.TEMPLATE_DIR}")
    logger.info(f"  [cyan]Poll interval:[/cyan] {settings.STATUS_POLL_INTERVAL}s")
    logger.info(f"  [cyan]Tunnel ready timeout:[/cyan] {settings.TUNNEL_READY_TIMEOUT}s")
    yield
    logger.info("Shutting down, closing tunnels")
    await get_session_registry().shutdown()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=__version__,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    response = await call_next(request)
    logger.debug(f"{request.method} {request.url.path} - Status: {response.status_code}")
    return response


app.include_router(
    sessions.router, prefix=f"{settings.API_V1_STR}/sessions", tags=["sessions"]
)
app.include_router(
    sessions.kinds_router, prefix=f"{settings.API_V1_STR}/job-kinds", tags=["job-kinds"]
)


@app.get("/")
def read_root():
    return {"message": f"Welcome to the {settings.PROJECT_NAME} API"}


@app.get("/health")
async def health_check():
    registry = get_session_registry()
    sessions_by_state = {}
    for session in registry.list():
        sessions_by_state[session.state.value] = sessions_by_state.get(session.state.value, 0) + 1
    return {"status": "ok", "version": __version__, "sessions": sessions_by_state}


def run() -> None:
    import uvicorn

    uvicorn.run("inference_manager.main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
