"""
CaseLink API Routes Package.

Example:
    from api.routes import identity_router

    app.include_router(identity_router)
"""
from api.routes.identity import router as identity_router

__all__ = ["identity_router"]
