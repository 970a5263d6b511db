from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from loguru import logger

from storefront_rewards.core.settings import settings
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .services.rewards import RewardCatalog, load_reward_catalog


APP_VERSION = "0.1.0"


def _resolve_catalog_path() -> Path:
    catalog_path = Path(settings.reward_catalog_path)
    if not catalog_path.is_absolute():
        catalog_path = Path(__file__).resolve().parent.parent.parent / catalog_path
    return catalog_path


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "reward_catalog", None) is None:
        catalog_path = _resolve_catalog_path()
        # ConfigurationError propagates and aborts startup.
        app.state.reward_catalog = load_reward_catalog(
            catalog_path,
            spin_weight_tolerance=settings.spin_weight_tolerance,
        )
        logger.info("Reward catalog ready", path=str(catalog_path))

    yield


def create_app(*, catalog: RewardCatalog | None = None) -> FastAPI:
    """Application factory for the storefront rewards service."""
    configure_logging(
        service_name="storefront-rewards",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="Storefront Rewards API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.reward_catalog = catalog

    if settings.tracing_enabled:
        configure_tracing(
            app,
            service_name="storefront-rewards",
            service_version=APP_VERSION,
            environment=settings.environment,
        )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
