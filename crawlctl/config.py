DEFAULT_ROOT_URL = "https://www.imdb.com/feature/genre/"

DEFAULT_CONFIG = {
    "fetch_retries": "0",         # extra attempts per fetch before giving up
    "backoff_base": "2",
    "timeout_seconds": "20",
    "root_url": DEFAULT_ROOT_URL,
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())
NUMERIC_CONFIG_KEYS = {"fetch_retries", "backoff_base", "timeout_seconds"}
INTEGER_CONFIG_KEYS = {"fetch_retries"}
