import logging

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from enhpix import __version__
from enhpix.core.conf import Settings, get_settings
from enhpix.core.log import setup_logging
from enhpix.src.entitlements.container import EntitlementContainer
from enhpix.src.entitlements.endpoints import entitlements_router
from enhpix.src.entitlements.shared.exceptions import (
    AuthenticityError,
    EntitlementError,
    PersistenceUnavailableError,
    ProfileNotFoundError,
    ReconciliationSourceError,
    SubscriptionError,
)

logger = logging.getLogger(__name__)

ContainerFactory = Callable[[Settings], EntitlementContainer]


def entitlement_error_status(exc: EntitlementError) -> int:
    """HTTP status for a domain error raised out of an endpoint"""
    if isinstance(exc, AuthenticityError):
        return 400
    if isinstance(exc, ProfileNotFoundError):
        return 404
    if isinstance(exc, PersistenceUnavailableError):
        return 503
    if isinstance(exc, ReconciliationSourceError):
        return 502
    if isinstance(exc, SubscriptionError) and exc.code == 'CANCEL_FAILED':
        return 502
    return 400


async def entitlement_exception_handler(request: Request, exc: EntitlementError) -> JSONResponse:
    status_code = entitlement_error_status(exc)
    if status_code >= 500:
        logger.error(f'{request.method} {request.url.path} failed: {exc.code} {exc.message}')
    else:
        logger.warning(f'{request.method} {request.url.path} rejected: {exc.code} {exc.message}')
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(EntitlementError, entitlement_exception_handler)


def register_middleware(app: FastAPI, settings: Settings) -> None:
    if settings.CORS_ALLOWED_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.CORS_ALLOWED_ORIGINS,
            allow_credentials=True,
            allow_methods=['*'],
            allow_headers=['*'],
        )


def register_router(app: FastAPI, settings: Settings) -> None:
    app.include_router(entitlements_router, prefix=settings.FASTAPI_API_V1_PATH)

    @app.get('/health', tags=['health'])
    async def health():
        return {'status': 'ok', 'version': __version__}


def register_app(
    settings: Optional[Settings] = None,
    container_factory: Optional[ContainerFactory] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    :param settings: application settings, defaults to the environment
    :param container_factory: builds the container at startup, defaults to EntitlementContainer.build
    :return:
    """
    settings = settings or get_settings()
    container_factory = container_factory or EntitlementContainer.build

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        setup_logging(settings)
        logger.info(f'Starting {settings.FASTAPI_TITLE} ({settings.ENVIRONMENT})')

        container = container_factory(settings)
        app.state.container = container

        yield

        logger.info('Shutting down, closing database connections')
        await container.close()

    app = FastAPI(
        title=settings.FASTAPI_TITLE,
        version=__version__,
        description=settings.FASTAPI_DESCRIPTION,
        docs_url=settings.FASTAPI_DOCS_URL,
        openapi_url=settings.FASTAPI_OPENAPI_URL,
        lifespan=lifespan,
    )

    register_middleware(app, settings)
    register_router(app, settings)
    register_exception_handlers(app)

    return app
