"""Runtime configuration resolved from environment variables and a secrets file."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from invoice_recon.core.errors import ConfigurationError
from invoice_recon.core.utils import clean_env_value, load_env_file

logger = logging.getLogger(__name__)

DEFAULT_ENV_FILE = Path("secrets/invoice_recon.env")
DEFAULT_SERVICE_ACCOUNT_PATHS = [
    Path("secrets/service_account.json"),
    Path("credentials/service_account.json"),
]
DEFAULT_SOURCE_PREFIX = "bui_invoice/original_files/fr_google_drive/"
DEFAULT_PROJECTS_PREFIX = "bui_invoice/projects/"


def _env(key: str, default: str = "") -> str:
    return clean_env_value(os.getenv(key, default) or default)


def _default_service_account_path() -> Optional[Path]:
    for candidate in DEFAULT_SERVICE_ACCOUNT_PATHS:
        if candidate.exists():
            return candidate
    return None


@dataclass(frozen=True)
class Settings:
    """Everything the provider adapters need, resolved once per process."""

    sheet_id: str = ""
    main_sheet: str = "Main"
    projects_sheet: str = "Projects"
    service_account_path: Optional[Path] = None
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_table: str = "invoices"
    r2_endpoint: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_bucket: str = ""
    r2_public_url: str = ""
    source_prefix: str = DEFAULT_SOURCE_PREFIX
    projects_prefix: str = DEFAULT_PROJECTS_PREFIX
    counter_db: Path = Path("invoice_counters.db")
    request_timeout: float = 30.0
    retry_attempts: int = 3
    lock_dir: Path = Path(".")

    @classmethod
    def from_env(cls, env_file: Path | None = None) -> "Settings":
        """Build settings from the environment after loading the secrets file."""

        path = env_file or Path(os.getenv("INVOICE_RECON_ENV_FILE", DEFAULT_ENV_FILE))
        load_env_file(path)

        account_env = _env("GOOGLE_SHEETS_SERVICE_ACCOUNT")
        account_path = Path(account_env) if account_env else _default_service_account_path()

        try:
            timeout = float(_env("REQUEST_TIMEOUT", "30"))
            attempts = int(_env("RETRY_ATTEMPTS", "3"))
        except ValueError as exc:
            raise ConfigurationError(f"Invalid numeric setting: {exc}") from exc

        bucket = _env("R2_BUCKET_NAME")
        return cls(
            sheet_id=_env("SHEET_ID"),
            main_sheet=_env("MAIN_SHEET", "Main") or "Main",
            projects_sheet=_env("PROJECTS_SHEET", "Projects") or "Projects",
            service_account_path=account_path,
            supabase_url=_env("SUPABASE_URL").rstrip("/"),
            supabase_key=_env("SUPABASE_KEY") or _env("SUPABASE_ANON_KEY"),
            supabase_table=_env("SUPABASE_TABLE", "invoices") or "invoices",
            r2_endpoint=_env("R2_ENDPOINT"),
            r2_access_key_id=_env("R2_ACCESS_KEY_ID"),
            r2_secret_access_key=_env("R2_SECRET_ACCESS_KEY"),
            r2_bucket=bucket,
            r2_public_url=(_env("R2_PUBLIC_URL") or (f"https://{bucket}.r2.cloudflarestorage.com" if bucket else "")).rstrip("/"),
            source_prefix=_env("ARCHIVE_SOURCE_PREFIX", DEFAULT_SOURCE_PREFIX) or DEFAULT_SOURCE_PREFIX,
            projects_prefix=_env("ARCHIVE_PROJECTS_PREFIX", DEFAULT_PROJECTS_PREFIX) or DEFAULT_PROJECTS_PREFIX,
            counter_db=Path(_env("COUNTER_DB", "invoice_counters.db") or "invoice_counters.db"),
            request_timeout=timeout,
            retry_attempts=max(attempts, 1),
            lock_dir=Path(_env("LOCK_DIR", ".") or "."),
        )

    def require(self, *names: str) -> None:
        """Raise ConfigurationError listing every named setting that is empty."""

        missing = [name for name in names if not getattr(self, name)]
        if missing:
            raise ConfigurationError(
                "Missing required settings: " + ", ".join(sorted(missing))
            )
