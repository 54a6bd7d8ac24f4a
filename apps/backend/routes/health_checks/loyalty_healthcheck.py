from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from apps.backend.services.loyalty.loyalty_service import LoyaltyService

log = logging.getLogger("loyalty.health")


async def supabase_rest_ping(url: Optional[str], key: Optional[str]) -> Dict[str, Any]:
    """
    Lightweight REST call against the Supabase root; no table dependency.
    """
    if not url or not key:
        return {"ok": False, "skipped": True}

    headers = {
        "apikey": key,
        "Authorization": f"Bearer {key}",
    }
    try:
        async with httpx.AsyncClient(timeout=10) as client:
            res = await client.get(f"{url}/rest/v1/", headers=headers)
    except httpx.HTTPError as e:
        log.error(f"[HEALTH] Supabase REST error: {e}")
        return {"ok": False, "error": str(e)}
    if res.status_code >= 400:
        log.warning(f"[HEALTH] Supabase REST ping failed ({res.status_code})")
    return {"ok": res.status_code < 400, "status_code": res.status_code}


async def loyalty_healthcheck(service: LoyaltyService) -> Dict[str, Any]:
    """
    Replays every ledger. Any mismatch quarantines that customer and fails the check.
    """
    ledger = await service.verify_all_ledgers()
    checks = {
        "ledger": not ledger["inconsistent"] and not ledger["quarantined"],
    }
    return {"ok": all(checks.values()), "checks": checks, "ledger": ledger}
