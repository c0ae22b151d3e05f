"""Tests for transfer scheduling, progress events and cancellation."""
from __future__ import annotations

import threading
from collections import defaultdict

import pytest

from conftest import InlineExecutor, ManualExecutor, MemoryFilesystem
from twinsftp.engine import TransferEngine
from twinsftp.errors import ConnectionLostError
from twinsftp.transfers import Direction, TransferState, TransferTask


@pytest.fixture
def filesystems():
    local = MemoryFilesystem("local", home="/l")
    remote = MemoryFilesystem("remote", home="/r")
    return local, remote


def upload(batch_id: str, name: str) -> TransferTask:
    return TransferTask(batch_id, Direction.UPLOAD, f"/l/{name}", f"/r/{name}")


def test_completed_transfer_copies_bytes_and_reports_progress(filesystems) -> None:
    local, remote = filesystems
    local.add_file("/l/a.bin", b"0123456789")
    engine = TransferEngine(local, remote, chunk_size=4, executor=InlineExecutor())
    task = upload("b", "a.bin")

    engine.enqueue([task])

    assert remote.files["/r/a.bin"] == b"0123456789"
    events = engine.poll_events()
    assert [e.state for e in events] == [TransferState.RUNNING] * 5 + [TransferState.COMPLETED]
    assert [e.transferred_bytes for e in events] == [0, 0, 4, 8, 10, 10]
    assert [e.destination_opened for e in events] == [False] + [True] * 5
    assert engine.is_idle
    assert engine.task(task.id) is None


def test_download_binds_remote_as_source(filesystems) -> None:
    local, remote = filesystems
    remote.add_file("/r/log.txt", b"remote")
    engine = TransferEngine(local, remote, executor=InlineExecutor())

    engine.enqueue([TransferTask("b", Direction.DOWNLOAD, "/r/log.txt", "/l/log.txt")])

    assert local.files["/l/log.txt"] == b"remote"


def test_concurrency_limit_is_respected(filesystems) -> None:
    local, remote = filesystems
    executor = ManualExecutor()
    engine = TransferEngine(local, remote, max_concurrent=2, executor=executor)
    tasks = []
    for i in range(5):
        local.add_file(f"/l/{i}", b"x")
        tasks.append(upload("b", str(i)))

    engine.enqueue(tasks)
    assert engine.running_count == 2
    assert engine.pending_count == 3

    while executor.queued:
        assert engine.running_count <= 2
        executor.run_one()
    assert engine.is_idle
    assert all(remote.files[f"/r/{i}"] == b"x" for i in range(5))


def test_batches_are_interleaved_round_robin(filesystems) -> None:
    local, remote = filesystems
    executor = ManualExecutor()
    engine = TransferEngine(local, remote, max_concurrent=1, executor=executor)
    for name in ("a1", "a2", "a3", "b1", "b2"):
        local.add_file(f"/l/{name}", b"x")

    tasks = {name: upload(name[0].upper(), name) for name in ("a1", "a2", "a3", "b1", "b2")}
    engine.enqueue([tasks["a1"], tasks["a2"], tasks["a3"]])
    engine.enqueue([tasks["b1"], tasks["b2"]])
    executor.run_all()

    names = {task.id: name for name, task in tasks.items()}
    started = [
        names[e.task_id] for e in engine.poll_events()
        if e.state is TransferState.RUNNING and not e.destination_opened
    ]
    assert started == ["a1", "b1", "a2", "b2", "a3"]


def test_one_failure_does_not_affect_others(filesystems) -> None:
    local, remote = filesystems
    local.add_file("/l/good", b"ok")
    local.add_file("/l/full", b"data")
    remote.fail_write.add("/r/full")
    engine = TransferEngine(local, remote, executor=InlineExecutor())
    good, full, missing = upload("b", "good"), upload("b", "full"), upload("b", "missing")

    engine.enqueue([full, missing, good])

    terminal = {e.task_id: e for e in engine.poll_events() if e.is_terminal}
    assert terminal[good.id].state is TransferState.COMPLETED
    assert terminal[full.id].state is TransferState.FAILED
    assert "no space left" in terminal[full.id].reason
    assert not terminal[full.id].connection_lost
    assert terminal[missing.id].state is TransferState.FAILED
    assert remote.files["/r/good"] == b"ok"


def test_lost_connection_is_flagged_on_the_failure(filesystems, monkeypatch) -> None:
    local, remote = filesystems
    local.add_file("/l/a", b"a")

    def broken(path):
        raise ConnectionLostError(path)

    monkeypatch.setattr(remote, "open_write", broken)
    engine = TransferEngine(local, remote, executor=InlineExecutor())

    engine.enqueue([upload("b", "a")])

    [failed] = [e for e in engine.poll_events() if e.is_terminal]
    assert failed.state is TransferState.FAILED
    assert failed.connection_lost
    assert not failed.destination_opened


def test_cancel_pending_tasks(filesystems) -> None:
    local, remote = filesystems
    executor = ManualExecutor()
    engine = TransferEngine(local, remote, max_concurrent=1, executor=executor)
    for name in ("1", "2", "3"):
        local.add_file(f"/l/{name}", b"x")
    first, second, third = upload("b", "1"), upload("b", "2"), upload("b", "3")
    engine.enqueue([first, second, third])

    assert engine.cancel("b") == 3
    executor.run_all()

    states = defaultdict(list)
    for event in engine.poll_events():
        states[event.task_id].append(event.state)
    assert states[second.id] == [TransferState.CANCELLED]
    assert states[third.id] == [TransferState.CANCELLED]
    assert states[first.id] == [TransferState.RUNNING, TransferState.CANCELLED]
    assert "/r/2" not in remote.files
    assert engine.is_idle


def test_cancelling_one_batch_leaves_others_running(filesystems) -> None:
    local, remote = filesystems
    executor = ManualExecutor()
    engine = TransferEngine(local, remote, max_concurrent=1, executor=executor)
    local.add_file("/l/keep", b"k")
    local.add_file("/l/drop", b"d")
    engine.enqueue([upload("keep", "keep")])
    engine.enqueue([upload("drop", "drop")])

    engine.cancel("drop")
    executor.run_all()

    assert remote.files["/r/keep"] == b"k"
    assert "/r/drop" not in remote.files
    assert engine.outstanding_batches() == set()


def test_cancel_running_task_stops_progress(filesystems) -> None:
    local, remote = filesystems
    local.add_file("/l/big", b"x" * 10)
    release, started = local.gate("/l/big")
    engine = TransferEngine(local, remote, chunk_size=5)
    task = upload("b", "big")
    try:
        engine.enqueue([task])
        assert started.wait(5)
        assert engine.cancel("b") == 1
        release.set()
        assert engine.wait_idle(5)
    finally:
        release.set()
        engine.shutdown(wait=True)

    events = [e for e in engine.poll_events() if e.task_id == task.id]
    assert events[-1].state is TransferState.CANCELLED
    assert [e for e in events if e.is_terminal] == [events[-1]]
    assert max(e.transferred_bytes for e in events) == 5
    assert any(e.destination_opened for e in events)
    assert remote.files["/r/big"] == b"x" * 5


def test_terminal_event_is_emitted_exactly_once(filesystems) -> None:
    local, remote = filesystems
    for i in range(6):
        local.add_file(f"/l/{i}", b"y" * 3)
    engine = TransferEngine(local, remote, max_concurrent=3, chunk_size=1)
    tasks = [upload("b", str(i)) for i in range(6)]
    try:
        engine.enqueue(tasks)
        assert engine.wait_idle(5)
    finally:
        engine.shutdown(wait=True)

    events = engine.poll_events()
    for task in tasks:
        own = [e for e in events if e.task_id == task.id]
        assert [e.is_terminal for e in own].count(True) == 1
        assert own[-1].state is TransferState.COMPLETED
        progress = [e.transferred_bytes for e in own]
        assert progress == sorted(progress)


def test_invalid_limits_are_rejected(filesystems) -> None:
    local, remote = filesystems
    with pytest.raises(ValueError):
        TransferEngine(local, remote, max_concurrent=0, executor=InlineExecutor())
    with pytest.raises(ValueError):
        TransferEngine(local, remote, chunk_size=0, executor=InlineExecutor())


def test_wait_idle_from_another_thread(filesystems) -> None:
    local, remote = filesystems
    local.add_file("/l/f", b"abc")
    engine = TransferEngine(local, remote)
    done = threading.Event()

    def waiter() -> None:
        if engine.wait_idle(5):
            done.set()

    try:
        engine.enqueue([upload("b", "f")])
        thread = threading.Thread(target=waiter)
        thread.start()
        thread.join(5)
    finally:
        engine.shutdown(wait=True)
    assert done.is_set()
