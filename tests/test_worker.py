import threading
from collections import Counter

import pytest

from crawlctl import repository
from crawlctl.command_queue import CommandQueue
from crawlctl.commands import DetailCommand, ExecutionContext, GenreListCommand, GenrePageCommand, with_page
from crawlctl.config import DEFAULT_ROOT_URL
from crawlctl.db import connect_db
from crawlctl.errors import FetchFailure
from crawlctl.models import COMPLETED, PENDING
from crawlctl.worker import DONE, run_worker, start_workers

from conftest import GENRE_URL, MOVIE_URL, MockSite

# 1 root + 2 genres x 2 pages + 2 x 2 x 3 movies
FULL_CRAWL = 1 + 4 + 12


def _completed(queue):
    return queue.list_records(status=COMPLETED)


def _payload_kinds(records):
    return Counter(r.kind for r in records)


def test_full_crawl_completes_every_command_once(queue, site):
    queue.enqueue(GenreListCommand())
    records = []

    summary = run_worker(queue, site, on_record=lambda c, r: records.append(r))

    assert summary.state == DONE
    assert summary.executed == FULL_CRAWL
    assert queue.is_empty()
    completed = _completed(queue)
    assert len(completed) == FULL_CRAWL
    assert len({r.id for r in completed}) == FULL_CRAWL
    assert _payload_kinds(completed) == {"genre_list": 1, "genre_page": 4, "detail": 12}
    assert len(records) == 12
    assert {r["title"] for r in records} == {f"Movie tt{g}{p}{m:02d}" for g in (0, 1) for p in (1, 2) for m in range(3)}
    assert all(n == 1 for n in site.calls.values())


def test_crawl_is_processed_breadth_first(queue, site):
    queue.enqueue(GenreListCommand())
    run_worker(queue, site)
    assert site.order[:3] == [
        DEFAULT_ROOT_URL,
        with_page(GENRE_URL.format("comedy"), 1),
        with_page(GENRE_URL.format("drama"), 1),
    ]


def test_root_fan_out_creates_one_pending_record_per_child(queue, site):
    queue.enqueue(GenreListCommand())
    root = queue.fetch_next()
    ctx = ExecutionContext(queue=queue, fetch=site)

    outcome = root.execute(ctx)

    assert len(outcome.follow_ups) == 2
    assert queue.get(root.id).status == COMPLETED
    pending = queue.list_records(status=PENDING)
    assert [r.kind for r in pending] == ["genre_page", "genre_page"]
    assert not queue.is_empty()


def test_resume_after_completion_does_not_repeat_work(db_path, site):
    q = CommandQueue(connect_db(db_path))
    q.enqueue(GenreListCommand())
    root = q.fetch_next()
    root.execute(ExecutionContext(queue=q, fetch=site))
    q.close()  # process dies before the loop re-checks is_empty

    q = CommandQueue(connect_db(db_path))
    try:
        summary = run_worker(q, site)
        assert summary.executed == FULL_CRAWL - 1
        assert site.calls[DEFAULT_ROOT_URL] == 1
        assert len(_completed(q)) == FULL_CRAWL
    finally:
        q.close()


def test_crash_before_completion_reexecutes_exactly_once(db_path, site):
    q = CommandQueue(connect_db(db_path))
    q.enqueue(GenreListCommand())
    root = q.fetch_next()
    root.interpret(root.fetch(ExecutionContext(queue=q, fetch=site)))
    q.close()  # killed before follow-ups and completion are written

    q = CommandQueue(connect_db(db_path))
    try:
        assert q.get(root.id).status == PENDING
        run_worker(q, site)
        assert site.calls[DEFAULT_ROOT_URL] == 2
        completed = _completed(q)
        assert len(completed) == FULL_CRAWL
        payloads = [r.payload for r in completed]
        assert len(set(payloads)) == len(payloads)
    finally:
        q.close()


def test_pagination_terminates_when_next_marker_disappears(queue):
    site = MockSite(genres=("horror",), pages=5, movies=1)
    queue.enqueue(GenrePageCommand(GENRE_URL.format("horror")))

    summary = run_worker(queue, site)

    assert summary.state == DONE
    assert queue.is_empty()
    assert _payload_kinds(_completed(queue)) == {"genre_page": 5, "detail": 5}


def test_failed_detail_stays_pending_until_retried(queue, site):
    movie = MOVIE_URL.format("tt0101")
    site.fail(movie, times=1)
    queue.enqueue(GenreListCommand())

    first = run_worker(queue, site)

    assert first.state == DONE
    assert first.fetch_failures == 1
    pending = queue.list_records(status=PENDING)
    assert len(pending) == 1
    assert pending[0].attempts == 1
    assert pending[0].last_error.startswith("FetchFailure")
    assert len(_completed(queue)) == FULL_CRAWL - 1

    second = run_worker(queue, site)

    assert second.executed == 1
    assert queue.is_empty()
    assert queue.get(pending[0].id).status == COMPLETED
    assert site.calls[movie] == 2
    details = [r for r in _completed(queue) if r.kind == "detail"]
    assert len(details) == 12


def test_bounded_fetch_retry_inside_command(queue, site):
    movie = MOVIE_URL.format("tt0100")
    site.fail(movie, times=2)
    queue.enqueue(DetailCommand(movie))
    sleeps = []

    summary = run_worker(queue, site, fetch_retries=2, backoff_base=2, sleep=sleeps.append)

    assert summary.fetch_failures == 0
    assert sleeps == [2, 4]
    assert queue.is_empty()


def test_retry_budget_exhausted_leaves_record_pending(queue, site):
    movie = MOVIE_URL.format("tt0100")
    site.fail(movie, times=5)
    queue.enqueue(DetailCommand(movie))

    summary = run_worker(queue, site, fetch_retries=1, sleep=lambda s: None)

    assert summary.fetch_failures == 1
    assert site.calls[movie] == 2
    assert queue.pending_count() == 1


def test_corrupt_record_is_reported_and_does_not_block_others(queue, site):
    with queue.conn:
        bad_id = repository.insert_record(queue.conn, kind="detail", payload=b"{broken")
    queue.enqueue(DetailCommand(MOVIE_URL.format("tt0100")))

    summary = run_worker(queue, site)

    assert summary.corrupt == 1
    assert summary.executed == 1
    bad = queue.get(bad_id)
    assert bad.status == PENDING
    assert bad.last_error.startswith("SerializationFailure")


def test_unexpected_errors_propagate_and_keep_record_pending(queue):
    def broken_fetch(url):
        raise RuntimeError("fetcher bug")

    queue.enqueue(GenreListCommand())
    with pytest.raises(RuntimeError):
        run_worker(queue, broken_fetch)
    assert queue.pending_count() == 1


def test_failing_record_sink_keeps_detail_pending(queue, site):
    url = MOVIE_URL.format("tt0100")
    record_id = queue.enqueue(DetailCommand(url))

    def broken_sink(command, record):
        raise OSError("disk full")

    with pytest.raises(OSError):
        run_worker(queue, site, on_record=broken_sink)
    assert queue.get(record_id).status == PENDING

    records = []
    summary = run_worker(queue, site, on_record=lambda c, r: records.append(r))

    assert summary.executed == 1
    assert records == [{"url": url, "title": "Movie tt0100"}]
    assert queue.get(record_id).status == COMPLETED
    assert site.calls[url] == 2


def test_stop_event_leaves_work_pending(queue, site):
    queue.enqueue(GenreListCommand())
    stop = threading.Event()
    stop.set()

    summary = run_worker(queue, site, stop=stop)

    assert summary.interrupted
    assert summary.executed == 0
    assert queue.pending_count() == 1


def test_multiple_workers_claim_each_record_once(db_path, site):
    q = CommandQueue(connect_db(db_path))
    q.enqueue(GenreListCommand())
    q.close()

    summary = start_workers(3, db_path, site)

    assert summary.state == DONE
    assert summary.executed == FULL_CRAWL
    assert all(n == 1 for n in site.calls.values())
    q = CommandQueue(connect_db(db_path))
    try:
        assert len(_completed(q)) == FULL_CRAWL
        assert all(r.claimed_by is None for r in q.list_records())
    finally:
        q.close()


def test_single_worker_runs_in_calling_thread(db_path, site):
    q = CommandQueue(connect_db(db_path))
    q.enqueue(DetailCommand(MOVIE_URL.format("tt0100")))
    q.close()

    summary = start_workers(1, db_path, site)

    assert summary.executed == 1


def test_start_workers_rejects_zero_workers(db_path, site):
    with pytest.raises(ValueError):
        start_workers(0, db_path, site)


def test_fetch_failure_message_names_target():
    err = FetchFailure("https://x/", "HTTP_503")
    assert str(err) == "https://x/: HTTP_503"
