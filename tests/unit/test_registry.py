import threading

from abrpack.domain.models import JobStatus, VideoJob
from abrpack.pipeline.registry import JobRegistry


def test_get_missing_returns_none():
    assert JobRegistry().get("nope") is None


def test_put_replaces_whole_record():
    registry = JobRegistry()
    job = VideoJob(id="a", title="first")
    registry.put(job)
    registry.put(job.mark_processing())
    assert registry.get("a").status == JobStatus.PROCESSING
    assert len(registry) == 1
    assert "a" in registry


def test_put_if_absent():
    registry = JobRegistry()
    assert registry.put_if_absent(VideoJob(id="a", title="first"))
    assert not registry.put_if_absent(VideoJob(id="a", title="second"))
    assert registry.get("a").title == "first"


def test_items_iterates_a_snapshot():
    registry = JobRegistry()
    registry.put(VideoJob(id="a"))
    registry.put(VideoJob(id="b"))

    seen = []
    for job_id, _ in registry.items():
        seen.append(job_id)
        registry.put(VideoJob(id=f"new-{job_id}"))

    assert seen == ["a", "b"]
    assert len(registry) == 4
    # a fresh iteration starts over and sees the additions
    assert [job_id for job_id, _ in registry.items()] == ["a", "b", "new-a", "new-b"]


def test_claim_next_pending_moves_to_processing():
    registry = JobRegistry()
    registry.put(VideoJob(id="a"))
    registry.put(VideoJob(id="b"))

    first = registry.claim_next_pending()
    second = registry.claim_next_pending()

    assert (first.id, second.id) == ("a", "b")
    assert registry.get("a").status == JobStatus.PROCESSING
    assert registry.claim_next_pending() is None


def test_concurrent_claims_never_hand_out_a_job_twice():
    registry = JobRegistry()
    for i in range(50):
        registry.put(VideoJob(id=f"job{i}"))

    claimed = []
    lock = threading.Lock()

    def worker():
        while True:
            job = registry.claim_next_pending()
            if job is None:
                return
            with lock:
                claimed.append(job.id)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(claimed) == sorted(f"job{i}" for i in range(50))
