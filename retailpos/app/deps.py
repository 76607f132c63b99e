import threading
from typing import Optional

from fastapi import Depends, Header, HTTPException

from .commit import CommitEngine
from .config import Settings, settings
from .errors import PersistenceUnavailable
from .flow import CheckoutFlow, SessionRegistry
from .stores.base import CheckoutStore

_lock = threading.Lock()
_store: Optional[CheckoutStore] = None
_registry: Optional[SessionRegistry] = None


def build_store(cfg: Settings) -> CheckoutStore:
    """Pick the store adapter named by configuration."""
    if cfg.store_backend == "postgres":
        if not cfg.db_url and cfg.is_production:
            raise PersistenceUnavailable("APP_DATABASE_URL / DATABASE_URL is not configured")
        from .stores.postgres import PostgresStore

        return PostgresStore()
    if cfg.store_backend == "memory":
        if cfg.is_production:
            raise PersistenceUnavailable("in-memory store is not allowed in production")
        from .stores.memory import MemoryStore

        return MemoryStore()
    from .stores.simulation import LocalSimulationStore, load_catalog

    return LocalSimulationStore(cfg.env, load_catalog(cfg.local_catalog_path))


def get_store() -> CheckoutStore:
    global _store
    with _lock:
        if _store is None:
            _store = build_store(settings)
        return _store


def get_registry() -> SessionRegistry:
    global _registry
    with _lock:
        if _registry is None:
            _registry = SessionRegistry(
                default_tax_rate=settings.default_tax_rate,
                receipt_prefix=settings.receipt_prefix,
                receipt_number_dated=settings.receipt_number_dated,
                idle_ttl_seconds=settings.session_idle_ttl_seconds,
            )
        return _registry


def get_engine(store: CheckoutStore = Depends(get_store)) -> CommitEngine:
    return CommitEngine(store, max_attempts=settings.commit_max_attempts)


def get_business_id(x_business_id: Optional[str] = Header(None, alias="X-Business-Id")) -> str:
    business_id = (x_business_id or "").strip()
    if not business_id:
        raise HTTPException(status_code=400, detail="missing business id")
    return business_id


def get_flow(
    session_id: str,
    business_id: str = Depends(get_business_id),
    registry: SessionRegistry = Depends(get_registry),
) -> CheckoutFlow:
    return registry.get(business_id, session_id)
