import os
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm.exc import StaleDataError

import models  # noqa: F401
from core.celery import celery_app
from core.config import settings
from core.db import Base, SessionLocal, engine
from core.errors import CommerceError, ConcurrentModification
from core.logging import configure_logging, get_logger
from core.seed import seed_reference_data
from routes.admin import router as admin_router
from routes.cart import router as cart_router
from routes.orders import router as orders_router
from routes.payments import router as payments_router

configure_logging()
logger = get_logger(__name__)

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Add OpenAPI security schemes for Bearer token authentication on docs/redoc
from fastapi.openapi.utils import get_openapi

def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema
    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )
    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "BearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
        }
    }
    openapi_schema["security"] = [{"BearerAuth": []}]
    app.openapi_schema = openapi_schema
    return app.openapi_schema

app.openapi = custom_openapi


@app.exception_handler(CommerceError)
async def commerce_error_handler(request: Request, exc: CommerceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "kind": exc.kind})


@app.exception_handler(StaleDataError)
async def stale_data_handler(request: Request, exc: StaleDataError):
    logger.info("Optimistic lock conflict on %s %s", request.method, request.url.path)
    error = ConcurrentModification()
    return JSONResponse(status_code=error.status_code, content={"detail": error.message, "kind": error.kind})


# Ensure tables exist (for dev/test; in prod use Alembic)
Base.metadata.create_all(bind=engine)

if not settings.TESTING:
    with SessionLocal() as db:
        seed_reference_data(db)

app.include_router(cart_router)
app.include_router(orders_router)
app.include_router(admin_router)
app.include_router(payments_router)

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
    }


@app.get("/celery-health")
async def celery_health_check():
    """Check Celery worker status"""
    try:
        inspect = celery_app.control.inspect()
        stats = inspect.stats()
        if stats:
            return {"status": "healthy", "workers": len(stats)}
        else:
            return {"status": "no_workers", "message": "No Celery workers running"}
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=settings.DEBUG,
    )
