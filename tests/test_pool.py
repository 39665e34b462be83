import threading

import pytest

from telkit.hotrod.pool import Pool


def test_jobs_are_run():
    done = []
    lock = threading.Lock()
    finished = threading.Semaphore(0)

    def job(n):
        with lock:
            done.append(n)
        finished.release()

    with Pool(3) as pool:
        for n in range(10):
            pool.execute(lambda n=n: job(n))
        for _ in range(10):
            assert finished.acquire(timeout=5)
    assert sorted(done) == list(range(10))
    with pytest.raises(RuntimeError):
        pool.execute(lambda: None)


def test_workers_run_in_parallel():
    workers = 4
    barrier = threading.Barrier(workers, timeout=5)
    passed = threading.Semaphore(0)

    def job():
        barrier.wait()
        passed.release()

    pool = Pool(workers)
    try:
        for _ in range(workers):
            pool.execute(job)
        assert all(passed.acquire(timeout=5) for _ in range(workers))
    finally:
        pool.stop()
    assert not barrier.broken
    with pytest.raises(RuntimeError):
        pool.execute(job)


def test_failing_job_does_not_kill_worker():
    ran = threading.Event()

    def boom():
        raise RuntimeError("job failure")

    pool = Pool(1)
    try:
        pool.execute(boom)
        pool.execute(ran.set)
        assert ran.wait(5)
    finally:
        pool.stop()


def test_execute_after_stop_raises():
    pool = Pool(1)
    pool.stop()
    with pytest.raises(RuntimeError):
        pool.execute(lambda: None)


def test_stop_is_idempotent():
    pool = Pool(2)
    pool.stop()
    pool.stop()
    with pytest.raises(RuntimeError):
        pool.execute(lambda: None)


def test_pool_without_workers_rejects_jobs():
    pool = Pool(0)
    with pytest.raises(RuntimeError):
        pool.execute(lambda: None)


def test_negative_workers_rejected():
    with pytest.raises(ValueError):
        Pool(-1)