from fastapi import APIRouter

from .endpoints import (
    challenges,
    coupons,
    health,
    loyalty,
    observability,
    organizations,
    redemptions,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(coupons.router)
router.include_router(redemptions.router)
router.include_router(loyalty.router)
router.include_router(challenges.router)
router.include_router(organizations.router)
router.include_router(observability.router)
