import logging
import logging.handlers
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = "sqlite:///./data/app.db"

    # Base pública para construir los enlaces de tracking (pixel / click)
    PUBLIC_BASE_URL: str = "http://localhost:8000"
    CRON_SECRET: str | None = None

    # CORS: lista separada por comas
    FRONTEND_ORIGIN: str = "http://localhost:3000"
    # destino del enlace de reseña si el negocio no tiene URL de Google (página del frontend)
    FEEDBACK_PAGE_URL: str = "http://localhost:3000/feedback"

    # Matching
    MATCH_READY_TEMPLATES: bool = False

    # Scheduler / dispatcher
    DEDUP_WINDOW_SECONDS: int = 300
    STALE_CLAIM_SECONDS: int = 600
    CLAIM_RETRY_BUDGET: int = 1
    DISPATCH_BATCH_SIZE: int = 25
    DISPATCH_WORKERS: int = 4
    DISPATCH_POLL_SECONDS: int = 60

    # Recovery sweep
    RECOVERY_WINDOW_MIN_HOURS: int = 24
    RECOVERY_WINDOW_MAX_HOURS: int = 36
    RECOVERY_BATCH_SIZE: int = 100
    RECOVERY_INTERVAL_SECONDS: int = 3600

    REVIEW_LINK_TTL_DAYS: int = 60

    # Channels
    CHANNEL_TIMEOUT_SECONDS: float = 10.0

    RESEND_API_KEY: str | None = None
    RESEND_API_URL: str = "https://api.resend.com/emails"
    EMAIL_FROM_DOMAIN: str = "example.com"
    EMAIL_DEFAULT_SUBJECT: str = "Thank you for your business!"

    TWILIO_ACCOUNT_SID: str | None = None
    TWILIO_AUTH_TOKEN: str | None = None
    TWILIO_SMS_FROM: str | None = None
    SMS_COMPLIANCE_FOOTER: str = "Reply STOP to opt out. Reply HELP for help."
    SMS_HELP_REPLY: str = "Thanks for reaching out. For assistance, reply here and the business will get back to you."

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"
    LOG_MAX_BYTES: int = 10_485_760  # 10 MB
    LOG_BACKUP_COUNT: int = 5


settings = Settings()


def setup_logging(cfg: Settings | None = None) -> None:
    """Consola + app.log rotado en LOG_DIR."""
    cfg = cfg or settings
    log_dir = Path(cfg.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)

    level = getattr(logging, cfg.LOG_LEVEL.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    ))
    root.addHandler(console)

    file_handler = logging.handlers.RotatingFileHandler(
        log_dir / "app.log",
        maxBytes=cfg.LOG_MAX_BYTES,
        backupCount=cfg.LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)-8s [%(name)s:%(funcName)s:%(lineno)d] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    root.addHandler(file_handler)

    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("twilio.http_client").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
