"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Routers are open at the include_router level. Each protects its
own endpoints with the get_current_user dependency: sign-up and sign-in
must stay open, while /auth/me, /auth/sign-out and everything under
/users need an access token.
"""

from fastapi import APIRouter

from tlca.api.auth import router as auth_router
from tlca.api.health import router as health_router
from tlca.api.users import router as users_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health_router, tags=["health"])
api_router.include_router(auth_router, tags=["auth"])
api_router.include_router(users_router, tags=["users"])
