import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def require(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"{name} is not set. Check your .env file.")
    return value


def is_development() -> bool:
    return os.getenv("APP_ENV", "production").lower() == "development"


def gateway_timeout() -> float:
    return float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))


def frontend_url() -> str:
    return os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")
