import threading
import time
import signal
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

import click

from .commands import Command, ExecutionContext, Fetcher
from .command_queue import CommandQueue
from .db import connect_db
from .errors import FetchFailure, SerializationFailure

RUNNING = "running"
DONE = "done"

RecordSink = Callable[[Command, Dict[str, Any]], None]


@dataclass
class WorkerRunSummary:
    executed: int = 0
    enqueued: int = 0
    fetch_failures: int = 0
    corrupt: int = 0
    interrupted: bool = False
    state: str = RUNNING
    skipped: Set[int] = field(default_factory=set)

    def merge(self, other: "WorkerRunSummary") -> "WorkerRunSummary":
        return WorkerRunSummary(
            executed=self.executed + other.executed,
            enqueued=self.enqueued + other.enqueued,
            fetch_failures=self.fetch_failures + other.fetch_failures,
            corrupt=self.corrupt + other.corrupt,
            interrupted=self.interrupted or other.interrupted,
            state=other.state,
            skipped=self.skipped | other.skipped,
        )


def install_signal_handlers(stop: threading.Event):
    def _handler(signum, frame):
        print(f"\n[Main] Received signal {signum}. Stopping after the current command")
        stop.set()

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[sig] = signal.signal(sig, _handler)
        except ValueError:
            # not in the main thread
            pass
    return previous


def restore_signal_handlers(previous):
    for sig, handler in previous.items():
        signal.signal(sig, handler)


def _report_corrupt(queue: CommandQueue, name: str, err: SerializationFailure, summary: WorkerRunSummary):
    click.secho(
        f"[{name}] Record #{err.record_id} cannot be decoded and will never run: {err}",
        fg="red", bold=True, err=True,
    )
    if err.record_id is not None:
        queue.record_failure(err.record_id, f"SerializationFailure: {err}")
        summary.skipped.add(err.record_id)
    summary.corrupt += 1


def run_worker(
    queue: CommandQueue,
    fetch: Fetcher,
    *,
    name: str = "worker-1",
    fetch_retries: int = 0,
    backoff_base: float = 2,
    claim: bool = False,
    stop: Optional[threading.Event] = None,
    on_record: Optional[RecordSink] = None,
    sleep: Callable[[float], None] = time.sleep,
    poll_interval: float = 0.5,
) -> WorkerRunSummary:
    """Execute pending commands until none is left for this run.

    Commands whose fetch fails stay pending and are skipped for the rest of
    the run; the next run starts again from the oldest pending record.
    """
    stop = stop or threading.Event()
    ctx = ExecutionContext(
        queue=queue,
        fetch=fetch,
        fetch_retries=fetch_retries,
        backoff_base=backoff_base,
        sleep=sleep,
        name=name,
        on_record=on_record,
    )
    summary = WorkerRunSummary()

    while summary.state == RUNNING:
        if stop.is_set():
            print(f"[{name}] Stop requested; remaining commands stay pending.")
            summary.interrupted = True
            summary.state = DONE
            continue

        if queue.pending_count(exclude=summary.skipped) == 0:
            summary.state = DONE
            continue

        try:
            if claim:
                command = queue.claim_next(name, exclude=summary.skipped)
            else:
                command = queue.fetch_next(exclude=summary.skipped)
        except SerializationFailure as e:
            _report_corrupt(queue, name, e, summary)
            continue

        if command is None:
            # everything left is claimed by other workers
            sleep(poll_interval)
            continue

        print(f"[{name}] Executing #{command.id} {command.describe()}")
        try:
            outcome = command.execute(ctx)
        except FetchFailure as e:
            print(f"[{name}] Command #{command.id} failed: {e}. Leaving it pending.")
            queue.record_failure(command.id, f"FetchFailure: {e}")
            summary.skipped.add(command.id)
            summary.fetch_failures += 1
            continue
        except Exception:
            if claim:
                queue.release(command)
            raise

        follow_ups = outcome.all_follow_ups()
        summary.executed += 1
        summary.enqueued += len(follow_ups)
        print(f"[{name}] Command #{command.id} completed; enqueued {len(follow_ups)} follow-up(s).")

    print(f"[{name}] Worker done: executed={summary.executed} failed={summary.fetch_failures} corrupt={summary.corrupt}")
    return summary


def start_workers(
    count: int,
    db_path: Optional[str],
    fetch: Fetcher,
    *,
    fetch_retries: int = 0,
    backoff_base: float = 2,
    on_record: Optional[RecordSink] = None,
    stop: Optional[threading.Event] = None,
) -> WorkerRunSummary:
    """Run ``count`` workers against the store at ``db_path`` until done.

    A single worker runs in the calling thread and reads records in FIFO
    order; several workers run in threads and claim records atomically.
    """
    if count < 1:
        raise ValueError("count must be >= 1")
    stop = stop or threading.Event()
    previous = install_signal_handlers(stop)
    claim = count > 1

    summaries: List[WorkerRunSummary] = []
    errors: List[BaseException] = []
    lock = threading.Lock()

    def _work(name: str):
        queue = None
        try:
            queue = CommandQueue(connect_db(db_path))
            s = run_worker(
                queue, fetch,
                name=name,
                fetch_retries=fetch_retries,
                backoff_base=backoff_base,
                claim=claim,
                stop=stop,
                on_record=on_record,
            )
            with lock:
                summaries.append(s)
        except BaseException as e:  # noqa: BLE001 - re-raised by the caller
            with lock:
                errors.append(e)
            stop.set()
        finally:
            if queue is not None:
                queue.close()

    try:
        if count == 1:
            _work("worker-1")
        else:
            threads = []
            for i in range(count):
                t = threading.Thread(target=_work, args=(f"worker-{i+1}",), daemon=True)
                t.start()
                threads.append(t)
                print(f"[System] Started worker-{i+1}")
            for t in threads:
                t.join()
            print("[System] All workers stopped.")
    finally:
        restore_signal_handlers(previous)

    if errors:
        raise errors[0]
    total = WorkerRunSummary()
    for s in summaries:
        total = total.merge(s)
    total.state = DONE
    return total
