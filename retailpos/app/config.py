import os
from decimal import Decimal, InvalidOperation
from typing import List, Optional

STORE_BACKENDS = {"postgres", "memory", "simulation"}


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _env_decimal(name: str, default: str) -> Decimal:
    raw = (os.getenv(name) or "").strip()
    try:
        value = Decimal(raw or default)
    except InvalidOperation:
        return Decimal(default)
    # NaN and Infinity parse but cannot be compared or stored.
    if not value.is_finite():
        return Decimal(default)
    return value


def _truthy(raw: str) -> bool:
    return str(raw or "").strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        # Empty means "not configured"; store selection below depends on it.
        # APP_DATABASE_URL wins so the pool and the store choice always agree.
        self.db_url = (os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL") or "").strip()
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        self.store_backend = self._resolve_store_backend((os.getenv("STORE_BACKEND") or "").strip().lower())
        self.local_catalog_path: Optional[str] = (os.getenv("LOCAL_CATALOG_PATH") or "").strip() or None

        self.receipt_prefix = (os.getenv("RECEIPT_PREFIX") or "ZN").strip().upper() or "ZN"
        dated_raw = os.getenv("RECEIPT_NUMBER_DATED")
        self.receipt_number_dated = True if dated_raw is None else _truthy(dated_raw)

        self.default_tax_rate = _env_decimal("DEFAULT_TAX_RATE", "7.5")
        if self.default_tax_rate < 0:
            self.default_tax_rate = Decimal("0")
        self.commit_max_attempts = max(1, _env_int("COMMIT_MAX_ATTEMPTS", 5))
        # Open sales idle longer than this are dropped from the registry; 0 keeps them forever.
        self.session_idle_ttl_seconds = max(0, _env_int("SESSION_IDLE_TTL_SECONDS", 4 * 60 * 60))

    @property
    def is_production(self) -> bool:
        return self.env in {"prod", "production"}

    @property
    def is_dev(self) -> bool:
        return self.env in {"local", "dev"}

    def _resolve_store_backend(self, explicit: str) -> str:
        if explicit in STORE_BACKENDS:
            return explicit
        # Unconfigured database outside production falls back to the local simulation adapter.
        if self.db_url:
            return "postgres"
        return "postgres" if self.is_production else "simulation"


settings = Settings()
