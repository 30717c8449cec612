# cart_engine/api/__init__.py
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from cart_engine.api.routers import carts
from cart_engine.api.routers.health import router as health_router
from cart_engine.domain.errors import CartError
from cart_engine.utils.logging import get_logger

logger = get_logger(__name__)


async def cart_error_handler(request: Request, exc: CartError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Nieobsluzony blad {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"message": "An internal error occurred", "reason": "INTERNAL_ERROR", "status": "error"},
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title="Cart Engine",
        version="1.0.0",
    )

    app.add_exception_handler(CartError, cart_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)

    # Include routers
    app.include_router(health_router)
    app.include_router(carts.router)
    return app
