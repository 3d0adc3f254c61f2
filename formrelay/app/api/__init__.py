"""FormRelay API routers."""

from formrelay.app.api.integrations import router as integrations_router

__all__ = ["integrations_router"]
