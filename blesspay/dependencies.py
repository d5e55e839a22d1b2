from functools import lru_cache

from blesspay.config import get_settings
from blesspay.database import SessionLocal
from blesspay.gateways import build_gateways
from blesspay.reconciliation import ReconciliationEngine
from blesspay.store import IntentStore


@lru_cache()
def get_reconciler() -> ReconciliationEngine:
    settings = get_settings()
    return ReconciliationEngine(
        store=IntentStore(SessionLocal),
        gateways=build_gateways(settings),
        settings=settings,
    )
