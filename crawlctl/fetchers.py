from typing import Optional

import requests

from .commands import Fetcher
from .errors import FetchFailure

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; crawlctl/0.1)",
    "Accept-Language": "en-US,en;q=0.8",
}


def http_fetcher(timeout: float = 20, session: Optional[requests.Session] = None) -> Fetcher:
    """Return a fetch function backed by a shared requests session.

    Any 2xx response is content; transport errors and other status codes
    raise FetchFailure so the command stays pending.
    """
    session = session or requests.Session()

    def fetch(url: str) -> str:
        try:
            response = session.get(url, headers=DEFAULT_HEADERS, timeout=timeout)
        except requests.RequestException as e:
            raise FetchFailure(url, type(e).__name__) from e
        status = response.status_code
        if not 200 <= int(status) < 300:
            raise FetchFailure(url, f"HTTP_{status}")
        return response.text

    return fetch
