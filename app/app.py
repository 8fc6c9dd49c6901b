import logging
import logging.handlers
import sys
from contextlib import asynccontextmanager
from pathlib import Path

# Packages inside app/ (core, routers, services) are imported top-level.
sys.path.append(str(Path(__file__).parent))

from fastapi import FastAPI  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402

from core.config import Settings, settings  # noqa: E402
from routers import health, mail, users  # noqa: E402

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
LOG_FILE_NAME = "mail-service.log"


def configure_logging(config: Settings) -> None:
    """Console logging at the configured level, plus WARNING+ to a rotating file.

    The file lives at ``<runtime_root>/logs/mail-service.log`` and rotates at
    5 MB with 3 backups. A log directory that cannot be created only costs the
    file handler.
    """
    logging.basicConfig(level=getattr(logging, config.log_level, logging.INFO), format=LOG_FORMAT)
    if not config.log_to_file:
        return

    log_file = config.log_dir / LOG_FILE_NAME
    try:
        config.log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
        )
    except OSError as exc:
        print(f"[warn] File logging disabled, cannot open {log_file}: {exc}", file=sys.stderr)
        return

    file_handler.setLevel(logging.WARNING)
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s | %(levelname)-7s | %(name)s:%(lineno)d | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logging.getLogger().addHandler(file_handler)
    logging.getLogger(__name__).info("Writing WARNING+ logs to %s", log_file)


configure_logging(settings)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    logger.info("Runtime root: %s", settings.runtime_root)
    logger.info("Database: %s", settings.db_path)
    if not settings.encryption.salt:
        logger.warning(
            "ENCRYPTION_SALT is not set; a per-process salt is in use and stored "
            "email passwords will not decrypt after a restart."
        )
    if settings.encryption.key == "default-encryption-key":
        logger.warning("ENCRYPTION_KEY is not set; using the built-in default key.")
    if not settings.microsoft.is_configured:
        logger.info("Microsoft Graph is not configured; Graph-enabled users cannot send or fetch.")
    yield


app = FastAPI(title="Mail Service", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

for module in (health, users, mail):
    app.include_router(module.router)
