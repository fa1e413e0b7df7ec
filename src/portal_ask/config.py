"""Configuration and paths for portal-ask."""

import os
from dataclasses import dataclass
from pathlib import Path

# Default data directory
DATA_DIR = Path.home() / ".portal-ask"
DB_PATH = DATA_DIR / "db.sqlite"
ENV_PATH = DATA_DIR / ".env"
CHAT_HISTORY_FILE = DATA_DIR / "chat_history"

# Upstream answer service
DEFAULT_BACKEND_URL = "https://api.boldvideo.io"
API_PATH = "/api/v1"
BACKEND_URL_ENV = "BACKEND_URL"
API_KEY_ENV = "BOLD_API_KEY"

# Request timeouts (seconds)
# Short Q&A answers come back well within 45s; deep / web-search augmented
# answers can take up to 5 minutes upstream.
# Override with ASK_TIMEOUT / ASK_DEEP_TIMEOUT in .env
DEFAULT_TIMEOUT = 45.0
DEFAULT_DEEP_TIMEOUT = 300.0
DEFAULT_CONNECT_TIMEOUT = 10.0

# Non-streaming fallback: replay the JSON answer as synthetic deltas
FALLBACK_CHUNK_SIZE = 50  # characters
FALLBACK_CHUNK_DELAY = 0.02  # seconds between synthetic deltas

# Conversation history fetch retries
HISTORY_RETRY_ATTEMPTS = 3

# Trailing block some generators append after the answer body
SOURCES_DELIMITER = "\n\nSources:"

TIMEOUT_MESSAGE = "This is taking longer than expected. Please try again."
INTERRUPTED_MESSAGE = "The response was interrupted. Please try again."


class ConfigurationError(Exception):
    """Required configuration (API key, backend URL) is missing or invalid."""

    pass


@dataclass
class AskSettings:
    """Explicit configuration handed to the transport."""

    api_key: str
    backend_url: str = DEFAULT_BACKEND_URL
    timeout: float = DEFAULT_TIMEOUT
    deep_timeout: float = DEFAULT_DEEP_TIMEOUT
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    chunk_size: int = FALLBACK_CHUNK_SIZE
    chunk_delay: float = FALLBACK_CHUNK_DELAY

    @property
    def api_base(self) -> str:
        """Backend base URL including scheme and the /api/v1 prefix."""
        base = self.backend_url.strip().rstrip("/")
        if not base.startswith(("http://", "https://")):
            base = f"https://{base}"
        if API_PATH not in base:
            base = f"{base}{API_PATH}"
        return base

    def timeout_for(self, deep: bool = False) -> float:
        return self.deep_timeout if deep else self.timeout


def ensure_data_dir() -> Path:
    """Create data directory if it doesn't exist."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    return DATA_DIR


def load_env_file(path: Path | None = None) -> dict[str, str]:
    """Load environment variables from .env file."""
    path = path or ENV_PATH
    env_vars = {}
    if not path.exists():
        return env_vars

    with open(path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            key = key.strip()
            value = value.strip().strip("\"'")
            env_vars[key] = value
            os.environ.setdefault(key, value)

    return env_vars


def save_env_var(key: str, value: str, path: Path | None = None) -> None:
    """Save or update an environment variable in .env file."""
    path = path or ENV_PATH
    if path == ENV_PATH:
        ensure_data_dir()

    existing_lines = []
    key_found = False

    if path.exists():
        with open(path) as f:
            for line in f:
                if line.strip().startswith(f"{key}="):
                    existing_lines.append(f"{key}={value}\n")
                    key_found = True
                else:
                    existing_lines.append(line)

    if not key_found:
        existing_lines.append(f"{key}={value}\n")

    with open(path, "w") as f:
        f.writelines(existing_lines)

    os.environ[key] = value


def get_api_key(key_name: str = API_KEY_ENV) -> str | None:
    """Get API key from environment (loads .env first)."""
    load_env_file()
    return os.environ.get(key_name)


def get_backend_url() -> str:
    """Get backend URL from environment, falling back to the default."""
    load_env_file()
    return os.environ.get(BACKEND_URL_ENV) or DEFAULT_BACKEND_URL


def _get_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value:
        try:
            return float(value)
        except ValueError:
            pass
    return default


def get_timeout(deep: bool = False) -> float:
    """Get request timeout in seconds.

    Override with ASK_TIMEOUT (or ASK_DEEP_TIMEOUT for deep answers) in .env.
    """
    load_env_file()
    if deep:
        return _get_float("ASK_DEEP_TIMEOUT", DEFAULT_DEEP_TIMEOUT)
    return _get_float("ASK_TIMEOUT", DEFAULT_TIMEOUT)


def load_settings(
    api_key: str | None = None,
    backend_url: str | None = None,
) -> AskSettings:
    """Build settings from arguments, environment and ~/.portal-ask/.env.

    Raises:
        ConfigurationError: If no API key is configured or the backend URL is empty.
    """
    api_key = api_key or get_api_key()
    if not api_key:
        raise ConfigurationError(
            f"{API_KEY_ENV} not set. Add it to ~/.portal-ask/.env:\n{API_KEY_ENV}=..."
        )
    backend_url = backend_url if backend_url is not None else get_backend_url()
    if not backend_url.strip():
        raise ConfigurationError(f"{BACKEND_URL_ENV} is empty")

    return AskSettings(
        api_key=api_key,
        backend_url=backend_url,
        timeout=get_timeout(deep=False),
        deep_timeout=get_timeout(deep=True),
    )
