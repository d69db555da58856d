import threading
from collections import Counter

import pytest

from crawlctl.command_queue import CommandQueue
from crawlctl.commands import with_page
from crawlctl.config import DEFAULT_ROOT_URL
from crawlctl.db import connect_db, init_db
from crawlctl.errors import FetchFailure

GENRE_URL = "https://www.imdb.com/search/title?genres={}"
MOVIE_URL = "https://www.imdb.com/title/{}/"


class MockSite:
    """In-memory IMDB look-alike: genres x pages x movies."""

    def __init__(self, genres=("comedy", "drama"), pages=2, movies=3):
        self.pages = {}
        self.calls = Counter()
        self.order = []
        self.failures = Counter()
        self._lock = threading.Lock()

        links = "".join(f'<a href="{GENRE_URL.format(g)}">{g}</a>' for g in genres)
        self.pages[DEFAULT_ROOT_URL] = f"<html>{links}</html>"

        for gi, genre in enumerate(genres):
            for page in range(1, pages + 1):
                items = []
                for mi in range(movies):
                    movie_id = f"tt{gi}{page}{mi:02d}"
                    items.append(f'<a href="/title/{movie_id}/?ref_=adv_li_tt">{movie_id}</a>')
                    self.pages[MOVIE_URL.format(movie_id)] = (
                        f'<h1 itemprop="name" class="">Movie {movie_id}</h1>'
                    )
                nav = '<a href="#">Next &#187;</a>' if page < pages else ""
                self.pages[with_page(GENRE_URL.format(genre), page)] = "".join(items) + nav

    def fail(self, url, times=1):
        self.failures[url] += times

    def __call__(self, url):
        with self._lock:
            self.calls[url] += 1
            self.order.append(url)
            if self.failures[url] > 0:
                self.failures[url] -= 1
                raise FetchFailure(url, "ConnectionError")
        if url not in self.pages:
            raise FetchFailure(url, "HTTP_404")
        return self.pages[url]


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "commands.sqlite")
    init_db(path)
    return path


@pytest.fixture
def queue(db_path):
    q = CommandQueue(connect_db(db_path))
    yield q
    q.close()


@pytest.fixture
def site():
    return MockSite()
