from datetime import datetime, timedelta, timezone

from repocache.ledger import TTLPolicy
from repocache.patterns import PatternLedger


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def test_put_and_get_round_trip(tmp_path):
    ledger = PatternLedger(tmp_path / "ledger.db")

    result = ledger.put("/repo/pages", {"file_count": 2, "tests": []}, 2)

    assert result.ok
    assert result.kind == "pattern"
    assert ledger.get("/repo/pages") == {"file_count": 2, "tests": []}
    assert ledger.get("/repo/other") is None


def test_expired_patterns_read_as_miss_until_swept(tmp_path):
    clock = FakeClock()
    ledger = PatternLedger(tmp_path / "ledger.db", clock=clock)
    ledger.put("/repo/pages", {"file_count": 1}, 1)

    clock.now += timedelta(days=3, hours=1)

    assert ledger.get("/repo/pages") is None
    assert ledger.count() == 1
    assert ledger.sweep_expired() == 1
    assert ledger.count() == 0


def test_custom_pattern_ttl(tmp_path):
    clock = FakeClock()
    ledger = PatternLedger(
        tmp_path / "ledger.db", ttl=TTLPolicy(pattern=timedelta(hours=1)), clock=clock
    )
    ledger.put("/repo", {"file_count": 0}, 0)

    clock.now += timedelta(minutes=30)
    assert ledger.get("/repo") == {"file_count": 0}

    clock.now += timedelta(minutes=31)
    assert ledger.get("/repo") is None


def test_unserializable_patterns_report_failure(tmp_path):
    ledger = PatternLedger(tmp_path / "ledger.db")

    result = ledger.put("/repo", {"bad": object()}, 1)

    assert result.ok is False
    assert ledger.count() == 0


def test_clear(tmp_path):
    ledger = PatternLedger(tmp_path / "ledger.db")
    ledger.put("/a", {}, 0)
    ledger.put("/b", {}, 0)

    assert ledger.clear() == 2
    assert ledger.get("/a") is None
