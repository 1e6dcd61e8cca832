# vaultscan/core/config.py
import os
from urllib.parse import quote_plus

from dotenv import load_dotenv


def str_to_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def merge_unique(items: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for v in items:
        if v in seen:
            continue
        seen.add(v)
        out.append(v)
    return out


PRESCREEN_MODES = {"advisory", "enforce"}
FINAL_STORAGE_PROVIDERS = {"b2", "r2"}


class Settings:
    def __init__(self) -> None:
        # Only load .env for local/dev. Deployed environments get real env vars.
        self.ENV = os.getenv("ENV", "dev").strip().lower()  # dev | prod
        if self.ENV != "prod":
            load_dotenv()

        # ----------------------------
        # Database
        # ----------------------------
        self.DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
        self.DB_HOST = os.getenv("DB_HOST", "")
        self.DB_PORT = os.getenv("DB_PORT", "5432")
        self.DB_NAME = os.getenv("DB_NAME", "")
        self.DB_APP_USER = os.getenv("DB_APP_USER", "")
        self.DB_APP_PASSWORD = os.getenv("DB_APP_PASSWORD", "")
        self.DB_MIGRATOR_USER = os.getenv("DB_MIGRATOR_USER", "")
        self.DB_MIGRATOR_PASSWORD = os.getenv("DB_MIGRATOR_PASSWORD", "")
        self.DB_SSLMODE = os.getenv("DB_SSLMODE", "require").strip().lower()
        self.DB_ECHO = str_to_bool(os.getenv("DB_ECHO"), default=False)

        # ----------------------------
        # CORS
        # ----------------------------
        dev_defaults = [
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
        cors_from_env = parse_csv(os.getenv("CORS_ORIGINS"))
        if self.ENV == "prod":
            self.CORS_ORIGINS = merge_unique(cors_from_env)
        else:
            self.CORS_ORIGINS = merge_unique(cors_from_env + dev_defaults)

        # ----------------------------
        # Auth / JWT (tokens are minted by the auth service; we only verify)
        # ----------------------------
        self.JWT_SECRET = os.getenv("JWT_SECRET", "")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

        # ----------------------------
        # External scanner (Cloudmersive)
        # ----------------------------
        self.CLOUDMERSIVE_API_KEY = os.getenv("CLOUDMERSIVE_API_KEY", "")
        self.CLOUDMERSIVE_BASE_URL = os.getenv("CLOUDMERSIVE_BASE_URL", "https://api.cloudmersive.com").strip().rstrip("/")
        self.MAX_FILE_SIZE_FOR_SCANNING = int(os.getenv("MAX_FILE_SIZE_FOR_SCANNING", str(2 * 1024 * 1024 * 1024)))
        self.SCAN_HTTP_TIMEOUT = float(os.getenv("SCAN_HTTP_TIMEOUT", "120"))
        self.PRESCREEN_MODE = os.getenv("PRESCREEN_MODE", "advisory").strip().lower()

        # ----------------------------
        # Buckets / object storage
        # ----------------------------
        self.STAGING_BUCKET = os.getenv("STAGING_BUCKET", "dynasty-staging")
        self.QUARANTINE_BUCKET = os.getenv("QUARANTINE_BUCKET", "dynasty-quarantine")
        self.FINAL_STORAGE_PROVIDER = os.getenv("FINAL_STORAGE_PROVIDER", "b2").strip().lower()
        self.FINAL_STORAGE_BUCKET = os.getenv("FINAL_STORAGE_BUCKET", "").strip() or self._default_final_bucket()
        self.SIGNED_URL_EXPIRES_SECONDS = int(os.getenv("SIGNED_URL_EXPIRES_SECONDS", "300"))
        self.TRANSFER_HTTP_TIMEOUT = float(os.getenv("TRANSFER_HTTP_TIMEOUT", "120"))

        self.R2_ENDPOINT_URL = os.getenv("R2_ENDPOINT_URL", "")
        self.R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
        self.R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
        self.B2_ENDPOINT_URL = os.getenv("B2_ENDPOINT_URL", "")
        self.B2_ACCESS_KEY_ID = os.getenv("B2_ACCESS_KEY_ID", "")
        self.B2_SECRET_ACCESS_KEY = os.getenv("B2_SECRET_ACCESS_KEY", "")
        self.B2_REGION = os.getenv("B2_REGION", "us-west-004")

        # ----------------------------
        # Scan pipeline
        # ----------------------------
        self.QUARANTINE_RETENTION_DAYS = int(os.getenv("QUARANTINE_RETENTION_DAYS", "30"))
        self.SCAN_CACHE_TTL_HOURS = int(os.getenv("SCAN_CACHE_TTL_HOURS", "24"))
        self.SCAN_BATCH_SIZE = int(os.getenv("SCAN_BATCH_SIZE", "10"))
        self.SCHEDULED_SCAN_BATCH_SIZE = int(os.getenv("SCHEDULED_SCAN_BATCH_SIZE", "20"))
        self.VAULT_SCAN_HOOK_SECRET = os.getenv("VAULT_SCAN_HOOK_SECRET", "")

        # ----------------------------
        # Task queue / AWS
        # ----------------------------
        self.AWS_REGION = os.getenv("AWS_REGION", "")
        self.SCAN_TASKS_SQS_QUEUE_URL = os.getenv("SCAN_TASKS_SQS_QUEUE_URL", "")

        self._validate()
        self._validate_prod()

    def _default_final_bucket(self) -> str:
        prod = self.ENV == "prod"
        if os.getenv("FINAL_STORAGE_PROVIDER", "b2").strip().lower() == "b2":
            return "dynastyprod" if prod else "dynastytest"
        return "dynasty-final-prod" if prod else "dynasty-final-test"

    def _validate(self) -> None:
        if self.PRESCREEN_MODE not in PRESCREEN_MODES:
            raise RuntimeError(f"PRESCREEN_MODE must be one of {sorted(PRESCREEN_MODES)}")
        if self.FINAL_STORAGE_PROVIDER not in FINAL_STORAGE_PROVIDERS:
            raise RuntimeError(f"FINAL_STORAGE_PROVIDER must be one of {sorted(FINAL_STORAGE_PROVIDERS)}")

    def _validate_prod(self) -> None:
        if self.ENV != "prod":
            return

        missing: list[str] = []

        if not self.JWT_SECRET:
            missing.append("JWT_SECRET")
        if not self.DATABASE_URL:
            if not self.DB_HOST:
                missing.append("DB_HOST")
            if not self.DB_NAME:
                missing.append("DB_NAME")
            if not self.DB_APP_USER:
                missing.append("DB_APP_USER")
            if not self.DB_APP_PASSWORD:
                missing.append("DB_APP_PASSWORD")
        if not self.CLOUDMERSIVE_API_KEY:
            missing.append("CLOUDMERSIVE_API_KEY")
        if not self.VAULT_SCAN_HOOK_SECRET:
            missing.append("VAULT_SCAN_HOOK_SECRET")
        if not self.R2_ENDPOINT_URL:
            missing.append("R2_ENDPOINT_URL")
        if self.FINAL_STORAGE_PROVIDER == "b2" and not self.B2_ENDPOINT_URL:
            missing.append("B2_ENDPOINT_URL")

        if self.DB_SSLMODE != "require":
            raise RuntimeError("DB_SSLMODE must be 'require' in prod")

        if not self.CORS_ORIGINS:
            missing.append("CORS_ORIGINS")

        cors_joined = ",".join(self.CORS_ORIGINS)
        if "localhost" in cors_joined or "127.0.0.1" in cors_joined:
            raise RuntimeError("CORS_ORIGINS contains localhost/dev origins in prod")

        if missing:
            raise RuntimeError(f"Missing required prod env vars: {', '.join(missing)}")

    def _build_database_url(self, user: str, password: str) -> str:
        encoded_password = quote_plus(password)
        return (
            f"postgresql+psycopg2://{user}:{encoded_password}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
            f"?sslmode={self.DB_SSLMODE}"
        )

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return self._build_database_url(self.DB_APP_USER, self.DB_APP_PASSWORD)

    @property
    def migrations_database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return self._build_database_url(self.DB_MIGRATOR_USER, self.DB_MIGRATOR_PASSWORD)


settings = Settings()


def require_jwt_secret() -> None:
    if not settings.JWT_SECRET:
        raise RuntimeError("JWT_SECRET must be set")
