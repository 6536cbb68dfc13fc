# ABOUTME: FastAPI application entry point
# ABOUTME: Configures logging and CORS, registers routers, and sets up middleware

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from tablegate.api import endpoint, health
from tablegate.config import get_settings
from tablegate.logging_config import configure_logging
from tablegate.middleware.logging import RequestContextMiddleware

settings = get_settings()
configure_logging(settings.logging)

app = FastAPI(
    title="tablegate",
    description="CRUD API over the tables of a relational database",
    version="0.1.0",
)

# Add middleware
app.add_middleware(RequestContextMiddleware)
if settings.cors.enabled:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors.allow_origins,
        allow_methods=settings.cors.allow_methods,
        allow_headers=settings.cors.allow_headers,
        allow_credentials=settings.cors.allow_credentials,
        max_age=settings.cors.max_age,
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Render framework errors in the same {"error": ...} shape as the API."""
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"error": message}, headers=exc.headers)


# Register routers
app.include_router(health.router)
app.include_router(endpoint.router)
