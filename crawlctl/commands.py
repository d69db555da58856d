"""Crawl commands and their tagged-variant serialization.

A command holds only its own parameters. Executing it fetches its target,
interprets the content into follow-up commands, and hands those back to the
queue together with its own completion. Stored payloads look like::

    {"type": "genre_page", "params": {"url": "...", "page": 2}}

and are decoded through ``COMMAND_TYPES``, a closed registry of variants.
"""
import json
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

from .config import DEFAULT_ROOT_URL
from .errors import FetchFailure, SerializationFailure
from .models import PENDING

Fetcher = Callable[[str], str]


@dataclass
class ExecutionContext:
    """Everything a command needs at run time, passed in explicitly."""

    queue: Any
    fetch: Fetcher
    fetch_retries: int = 0
    backoff_base: float = 2
    sleep: Callable[[float], None] = time.sleep
    name: str = "worker"
    on_record: Optional[Callable[["Command", Dict[str, Any]], None]] = None


@dataclass
class Outcome:
    follow_ups: List["Command"] = field(default_factory=list)
    continuation: Optional["Command"] = None
    record: Optional[Dict[str, Any]] = None

    def all_follow_ups(self) -> List["Command"]:
        out = list(self.follow_ups)
        if self.continuation is not None:
            out.append(self.continuation)
        return out


class Command(ABC):
    kind: str = ""

    def __init__(self) -> None:
        self.id: Optional[int] = None
        self.status: int = PENDING

    @abstractmethod
    def params(self) -> Dict[str, Any]:
        """JSON-safe constructor arguments."""

    @classmethod
    def from_params(cls, params: Dict[str, Any]) -> "Command":
        return cls(**params)

    @abstractmethod
    def fetch(self, ctx: ExecutionContext) -> str:
        ...

    @abstractmethod
    def interpret(self, content: str) -> Outcome:
        ...

    def execute(self, ctx: ExecutionContext) -> Outcome:
        content = self.fetch(ctx)
        outcome = self.interpret(content)
        # Extracted fields are delivered while the record is still pending,
        # so a failing sink or a kill here means the command runs again.
        if outcome.record is not None and ctx.on_record is not None:
            ctx.on_record(self, outcome.record)
        # Follow-ups and our own completion land in one transaction, so a
        # crash before this point leaves the record pending and nothing else.
        ctx.queue.complete_with(self, outcome.all_follow_ups())
        return outcome

    def describe(self) -> str:
        return f"{type(self).__name__}({', '.join(f'{k}={v!r}' for k, v in self.params().items())})"

    def __eq__(self, other):
        return type(self) is type(other) and self.params() == other.params()

    def __hash__(self):
        return hash((self.kind, json.dumps(self.params(), sort_keys=True)))

    def __repr__(self):
        return f"<{self.describe()} id={self.id}>"


def with_page(url: str, page: int) -> str:
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != "page"]
    query.append(("page", str(page)))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


class WebCommand(Command):
    """Base for commands whose target is a single URL."""

    def __init__(self, url: str) -> None:
        super().__init__()
        if not isinstance(url, str) or not url:
            raise ValueError("url must be a non-empty string")
        self.url = url

    def params(self) -> Dict[str, Any]:
        return {"url": self.url}

    def target(self) -> str:
        return self.url

    def fetch(self, ctx: ExecutionContext) -> str:
        target = self.target()
        attempt = 0
        while True:
            try:
                content = ctx.fetch(target)
                print(f"[{ctx.name}] Downloaded {target}")
                return content
            except FetchFailure as e:
                if attempt >= ctx.fetch_retries:
                    raise
                attempt += 1
                delay = ctx.backoff_base ** attempt
                print(f"[{ctx.name}] Fetch failed ({e.reason}); retry {attempt}/{ctx.fetch_retries} in {delay}s")
                ctx.sleep(delay)


class GenreListCommand(WebCommand):
    kind = "genre_list"
    link_re = re.compile(r'href="(https://www\.imdb\.com/search/title\?genres=.*?)"')

    def __init__(self, url: str = DEFAULT_ROOT_URL) -> None:
        super().__init__(url)

    def interpret(self, content: str) -> Outcome:
        genres = list(dict.fromkeys(self.link_re.findall(content)))
        print(f"GenreListCommand: Discovered {len(genres)} genres.")
        return Outcome(follow_ups=[GenrePageCommand(g) for g in genres])


class GenrePageCommand(WebCommand):
    kind = "genre_page"
    item_re = re.compile(r'href="(/title/.*?/)\?ref_=adv_li_tt"')
    next_re = re.compile(r"Next &#187;</a>")

    def __init__(self, url: str, page: int = 1) -> None:
        super().__init__(url)
        if int(page) < 1:
            raise ValueError("page must be >= 1")
        self.page = int(page)

    def params(self) -> Dict[str, Any]:
        return {"url": self.url, "page": self.page}

    def target(self) -> str:
        return with_page(self.url, self.page)

    def interpret(self, content: str) -> Outcome:
        paths = list(dict.fromkeys(self.item_re.findall(content)))
        print(f"GenrePageCommand: Discovered {len(paths)} movies on page {self.page}.")
        base = self.target()
        details = [DetailCommand(urljoin(base, p)) for p in paths]
        continuation = None
        if self.next_re.search(content):
            continuation = GenrePageCommand(self.url, self.page + 1)
        return Outcome(follow_ups=details, continuation=continuation)


class DetailCommand(WebCommand):
    kind = "detail"
    title_re = re.compile(r'<h1 itemprop="name" class="">(.*?)</h1>', re.S)

    def interpret(self, content: str) -> Outcome:
        m = self.title_re.search(content)
        title = m.group(1).strip() if m else None
        print(f"DetailCommand: Parsed movie {title}.")
        return Outcome(record={"url": self.url, "title": title})


COMMAND_TYPES: Dict[str, type] = {
    cls.kind: cls for cls in (GenreListCommand, GenrePageCommand, DetailCommand)
}


# ---------- Serialization ----------
def encode_command(command: Command) -> bytes:
    if COMMAND_TYPES.get(command.kind) is not type(command):
        raise SerializationFailure(f"Unregistered command type: {type(command).__name__}")
    try:
        doc = {"type": command.kind, "params": command.params()}
        return json.dumps(doc, sort_keys=True, ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise SerializationFailure(f"Cannot encode {type(command).__name__}: {e}")


def decode_command(payload: bytes, record_id: Optional[int] = None) -> Command:
    try:
        doc = json.loads(bytes(payload).decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise SerializationFailure(f"Corrupt payload: {e}", record_id=record_id)
    if not isinstance(doc, dict):
        raise SerializationFailure("Payload is not an object", record_id=record_id)

    cls = COMMAND_TYPES.get(doc.get("type"))
    if cls is None:
        raise SerializationFailure(f"Unknown command type {doc.get('type')!r}", record_id=record_id)
    params = doc.get("params")
    if not isinstance(params, dict):
        raise SerializationFailure("Payload params must be an object", record_id=record_id)
    try:
        command = cls.from_params(params)
    except (TypeError, ValueError) as e:
        raise SerializationFailure(f"Cannot rebuild {cls.__name__}: {e}", record_id=record_id)
    command.id = record_id
    return command
