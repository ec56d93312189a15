"""FastAPI application."""

from fastapi import FastAPI

from backend.app.api.routes.health import router as health_router
from backend.app.api.routes.metrics import router as metrics_router
from backend.app.api.routes.organizations import router as organizations_router
from backend.app.middleware.request_scope import RequestScopeMiddleware

app = FastAPI(title="Admin Backend API", version="0.1.0")

# Identity-bound transaction for every request carrying a bearer subject
app.add_middleware(RequestScopeMiddleware)

# Register routes
app.include_router(health_router, tags=["health"])
app.include_router(metrics_router, tags=["metrics"])
app.include_router(organizations_router, tags=["organizations"])


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {"message": "Admin Backend API", "version": "0.1.0"}
