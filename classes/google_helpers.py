import logging
import os
from google.cloud import secretmanager
from google.oauth2 import service_account
from google.auth import default as google_auth_default
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)

logger = logging.getLogger("craft_backend")

# --- Configuration ---
PROJECT_ID = os.getenv("GOOGLE_CLOUD_PROJECT", "your-project-id")

DATABASE_URL        = os.environ.get("DATABASE_URL", "")
DB_HOST             = os.environ.get("DB_HOST", "localhost")
DB_PORT             = int(os.environ.get("DB_PORT", "5432"))
DB_NAME             = os.environ.get("DB_NAME", "")
DB_USER             = os.environ.get("DB_USER", "")
DB_PASSWORD         = os.environ.get("DB_PASSWORD")
DB_SECRET_ID        = os.environ.get("DB_SECRET_ID")

TELEGRAM_BOT_TOKEN        = os.environ.get("TELEGRAM_BOT_TOKEN")
TELEGRAM_TOKEN_SECRET_ID  = os.environ.get("TELEGRAM_TOKEN_SECRET_ID")

SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "3600"))
REMINDER_WINDOW_HOURS  = int(os.getenv("REMINDER_WINDOW_HOURS", "24"))
STORE_COMMIT_ATTEMPTS  = int(os.getenv("STORE_COMMIT_ATTEMPTS", "3"))

TRIGGER_AUDIENCE = os.getenv("TRIGGER_AUDIENCE")
ADMIN_EMAILS = {
    e.strip().lower()
    for e in os.getenv("ADMIN_EMAILS", "").split(",")
    if e.strip()
}

IS_LOCAL_DB = bool(DATABASE_URL) or not DB_NAME
LOCAL_DATABASE_URL = "sqlite:///./craft_lifecycle.db"


def _build_creds():
    key_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
    scopes = ["https://www.googleapis.com/auth/cloud-platform"]
    if key_path and os.path.exists(key_path):
        return service_account.Credentials.from_service_account_file(key_path, scopes=scopes)
    creds, _ = google_auth_default(scopes=scopes)
    return creds


def access_secret(secret_id: str) -> str:
    creds = _build_creds()
    client = secretmanager.SecretManagerServiceClient(credentials=creds)
    name = client.secret_version_path(PROJECT_ID, secret_id, "latest")
    resp = client.access_secret_version(request={"name": name})
    return resp.payload.data.decode("utf-8")


def get_db_password() -> str:
    global DB_PASSWORD

    if DB_PASSWORD:
        return DB_PASSWORD

    if DB_SECRET_ID:
        DB_PASSWORD = access_secret(DB_SECRET_ID)
        return DB_PASSWORD

    raise RuntimeError("No DB_PASSWORD and no Secret Manager configured")


def get_telegram_bot_token() -> str:
    global TELEGRAM_BOT_TOKEN

    if TELEGRAM_BOT_TOKEN:
        return TELEGRAM_BOT_TOKEN

    if TELEGRAM_TOKEN_SECRET_ID:
        TELEGRAM_BOT_TOKEN = access_secret(TELEGRAM_TOKEN_SECRET_ID)
        return TELEGRAM_BOT_TOKEN

    raise RuntimeError("No TELEGRAM_BOT_TOKEN and no Secret Manager configured")


def get_db_engine():
    if IS_LOCAL_DB:
        url = DATABASE_URL or LOCAL_DATABASE_URL
        logger.info(f"[DB] Using local database: {url}")
        if url.startswith("sqlite"):
            return create_engine(url, connect_args={"check_same_thread": False})
        return create_engine(url, pool_pre_ping=True)

    password = get_db_password()
    url = f"postgresql+pg8000://{DB_USER}:{password}@{DB_HOST}:{DB_PORT}/{DB_NAME}"
    logger.info(f"[DB] Connecting to Postgres at {DB_HOST}:{DB_PORT}/{DB_NAME}")

    # pg8000 supports 'timeout' in seconds
    return create_engine(
        url,
        pool_pre_ping=True,
        connect_args={"timeout": 10},  # fail in 10s instead of hanging forever
    )


def create_session_factory(engine=None) -> sessionmaker:
    engine = engine or get_db_engine()
    return sessionmaker(bind=engine, autoflush=False, future=True)
