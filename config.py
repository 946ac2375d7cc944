import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        backend: str,
        supabase_url: str,
        supabase_key: str,
        timezone: str,
        session_secret: str,
        session_max_age_hours: int,
        default_eur_to_cfa: str,
        default_eur_to_usd: str,
        admin_pin: str,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.backend = backend
        self.supabase_url = supabase_url
        self.supabase_key = supabase_key
        self.timezone = timezone
        self.session_secret = session_secret
        self.session_max_age_hours = session_max_age_hours
        self.default_eur_to_cfa = default_eur_to_cfa
        self.default_eur_to_usd = default_eur_to_usd
        self.admin_pin = admin_pin
        self.log_level = log_level


def _data_dir() -> Path:
    return Path(os.getenv("EXPENSHARE_DATA_DIR", "./data")).resolve()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    default_db = _data_dir() / "expenshare.db"
    database_url = os.getenv("EXPENSHARE_DATABASE_URL", f"sqlite:///{default_db}")
    backend = os.getenv("EXPENSHARE_BACKEND", "sql").lower()
    supabase_url = os.getenv("SUPABASE_URL", "")
    supabase_key = os.getenv("SUPABASE_KEY", "")
    timezone = os.getenv("EXPENSHARE_TIMEZONE", "Europe/Paris")
    session_secret = os.getenv(
        "EXPENSHARE_SESSION_SECRET",
        "6f0c1d9e3b8a4f27a51c0e6d92b7f3a8c4e15d60b9a27f83e1c4d5a6b7980f12",
    )
    session_max_age_hours = int(os.getenv("EXPENSHARE_SESSION_MAX_AGE_HOURS", "720"))
    default_eur_to_cfa = os.getenv("EXPENSHARE_DEFAULT_EUR_TO_CFA", "655.957")
    default_eur_to_usd = os.getenv("EXPENSHARE_DEFAULT_EUR_TO_USD", "1.0")
    admin_pin = os.getenv("EXPENSHARE_ADMIN_PIN", "1234")
    log_level = os.getenv("EXPENSHARE_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        backend=backend,
        supabase_url=supabase_url,
        supabase_key=supabase_key,
        timezone=timezone,
        session_secret=session_secret,
        session_max_age_hours=session_max_age_hours,
        default_eur_to_cfa=default_eur_to_cfa,
        default_eur_to_usd=default_eur_to_usd,
        admin_pin=admin_pin,
        log_level=log_level,
    )


def ensure_data_dir(database_url: str) -> None:
    if not database_url.startswith("sqlite:///") or database_url.endswith(":memory:"):
        return
    path = Path(database_url.removeprefix("sqlite:///"))
    path.parent.mkdir(parents=True, exist_ok=True)
