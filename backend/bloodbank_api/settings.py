import os
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent.parent


def _load_env_file(path: Path) -> None:
    """
    Lightweight .env loader so local database and threshold overrides live in
    one place. Values already present in the environment win.
    """
    if not path.exists():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if key.lower().startswith("export "):
            key = key[7:].strip()
        if not key:
            continue
        value = value.strip().strip('"').strip("'")
        os.environ.setdefault(key, value)


_load_env_file(BASE_DIR / ".env")

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-only-insecure-key")
DEBUG = os.getenv("DJANGO_DEBUG", "0") == "1"
PRODUCTION = os.getenv("DJANGO_PRODUCTION", "0") == "1"
ALLOWED_HOSTS = [
    host.strip()
    for host in os.getenv("DJANGO_ALLOWED_HOSTS", "*").split(",")
    if host.strip()
]

if PRODUCTION:
    if DEBUG:
        raise RuntimeError("DJANGO_PRODUCTION is set but DJANGO_DEBUG is enabled.")
    if SECRET_KEY == "dev-only-insecure-key":
        raise RuntimeError("DJANGO_PRODUCTION is set but DJANGO_SECRET_KEY is still the dev default.")
    if not ALLOWED_HOSTS or "*" in ALLOWED_HOSTS:
        raise RuntimeError("DJANGO_PRODUCTION is set but DJANGO_ALLOWED_HOSTS is empty or contains '*'.")

INSTALLED_APPS = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "api",
    "inventory",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
]

ROOT_URLCONF = "bloodbank_api.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    }
]

WSGI_APPLICATION = "bloodbank_api.wsgi.application"

# PostgreSQL when DB_NAME is configured; SQLite for local tooling and tests.
if os.getenv("DB_NAME"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("DB_NAME", ""),
            "USER": os.getenv("DB_USER", ""),
            "PASSWORD": os.getenv("DB_PASSWORD", ""),
            "HOST": os.getenv("DB_HOST", ""),
            "PORT": os.getenv("DB_PORT", "5432"),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.getenv("DJANGO_SQLITE_PATH", str(BASE_DIR / "db.sqlite3")),
        }
    }

AUTH_PASSWORD_VALIDATORS = []

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# Authentication is handled upstream; actors arrive as opaque user references.
REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.AllowAny"],
    "UNAUTHENTICATED_USER": None,
}


def _get_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid {name} value: {raw!r}") from exc


def _get_threshold_env(name: str) -> dict[str, int]:
    raw = os.getenv(name)
    if not raw:
        return {}
    thresholds: dict[str, int] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        blood_type, sep, value = part.rpartition(":")
        if not sep or not blood_type.strip():
            raise RuntimeError(f"Invalid {name} entry: {part!r}")
        try:
            thresholds[blood_type.strip().upper()] = int(value)
        except ValueError as exc:
            raise RuntimeError(f"Invalid {name} entry: {part!r}") from exc
    return thresholds


BLOODBANK_LOW_STOCK_THRESHOLDS = _get_threshold_env("BLOODBANK_LOW_STOCK_THRESHOLDS")
BLOODBANK_EXPIRY_WARNING_DAYS = _get_int_env("BLOODBANK_EXPIRY_WARNING_DAYS", 7)
BLOODBANK_EXPIRY_URGENT_DAYS = _get_int_env("BLOODBANK_EXPIRY_URGENT_DAYS", 3)
BLOODBANK_AUTO_APPROVE_URGENCY = os.getenv("BLOODBANK_AUTO_APPROVE_URGENCY", "low").strip().lower()
BLOODBANK_NOTIFY_HANDLER = os.getenv(
    "BLOODBANK_NOTIFY_HANDLER", "inventory.notifications.log_notification"
)
BLOODBANK_PAGE_SIZE = _get_int_env("BLOODBANK_PAGE_SIZE", 10)
BLOODBANK_MAX_PAGE_SIZE = _get_int_env("BLOODBANK_MAX_PAGE_SIZE", 100)

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "standard"},
    },
    "loggers": {
        "bloodbank": {
            "handlers": ["console"],
            "level": os.getenv("BLOODBANK_LOG_LEVEL", "INFO").upper(),
        },
        "inventory": {
            "handlers": ["console"],
            "level": os.getenv("BLOODBANK_LOG_LEVEL", "INFO").upper(),
        },
    },
}
