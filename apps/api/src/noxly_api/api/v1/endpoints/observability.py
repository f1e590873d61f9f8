"""Observability snapshot for redemption counters."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from noxly_api.api.dependencies.security import require_admin_api_key
from noxly_api.observability.redemptions import get_redemption_store


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/redemptions",
    dependencies=[Depends(require_admin_api_key)],
    summary="Redemption observability snapshot",
)
async def get_redemption_snapshot() -> dict[str, object]:
    """Retrieve aggregated redemption, claim and sweep counters (requires admin API key)."""
    store = get_redemption_store()
    return store.snapshot().as_dict()
