"""API v1 router - includes all v1 endpoints."""

from fastapi import APIRouter

from authcore.api.v1.endpoints import (
    admin_audit,
    admin_email_services,
    admin_mfa,
    admin_users,
    auth,
    health,
    mfa,
    security,
    sessions,
)

api_router = APIRouter()

# Include all endpoint routers
api_router.include_router(health.router, prefix="", tags=["Health"])
api_router.include_router(auth.router, prefix="/auth", tags=["Auth"])
api_router.include_router(mfa.router, prefix="/mfa", tags=["MFA"])
api_router.include_router(sessions.router, prefix="/sessions", tags=["Sessions"])
api_router.include_router(security.router, prefix="/security", tags=["Security"])
api_router.include_router(admin_users.router, prefix="/admin/users", tags=["Admin - Users"])
api_router.include_router(admin_mfa.router, prefix="/admin/mfa", tags=["Admin - MFA"])
api_router.include_router(admin_email_services.router, prefix="/admin/email-services", tags=["Admin - Email"])
api_router.include_router(admin_audit.router, prefix="/admin/audit", tags=["Admin - Audit"])
