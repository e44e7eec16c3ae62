# livepatch/tests/test_hotspots.py
import logging
import threading

from livepatch.hotspots import HotspotTable


def _hit(table, sig, n, ms=60.0):
    for _ in range(n):
        table.record(sig, ms)


def test_report_orders_by_hits_desc():
    table = HotspotTable(threshold_ms=50)
    _hit(table, "app.A.run", 5)
    _hit(table, "app.B.run", 9)
    _hit(table, "app.C.run", 1)

    lines = table.report().splitlines()
    assert lines[0] == "method,hits"
    assert lines[1:] == ["app.B.run,9", "app.A.run,5", "app.C.run,1"]
    assert table.top(1) == [("app.B.run", 9)]


def test_threshold_is_exclusive():
    table = HotspotTable(threshold_ms=50)
    assert table.record("app.fast", 50.0) is False
    assert table.record("app.slow", 50.1) is True
    assert table.hits("app.fast") == 0
    assert table.hits("app.slow") == 1
    assert len(table) == 1


def test_snapshot_logged_every_tenth_signature(caplog):
    table = HotspotTable(threshold_ms=0)
    with caplog.at_level(logging.INFO, logger="livepatch.hotspots"):
        for i in range(20):
            table.record(f"app.m{i:02d}", 1.0)
    snapshots = [r for r in caplog.records if "hotspot snapshot" in r.getMessage()]
    assert len(snapshots) == 2


def test_concurrent_increments_are_not_lost():
    table = HotspotTable(threshold_ms=0)

    def worker():
        for i in range(1000):
            table.record(f"app.sig{i % 4}", 1.0)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(table.top(10)) == [(f"app.sig{i}", 2000) for i in range(4)]


def test_write_report_creates_directory(tmp_path):
    table = HotspotTable(threshold_ms=0)
    table.record("app.x", 3.0)
    path = tmp_path / "profiler-data" / "hotspots.csv"

    table.write_report(str(path))

    assert path.read_text() == "method,hits\napp.x,1\n"
    assert [p.name for p in path.parent.iterdir()] == ["hotspots.csv"]
    table.clear()
    assert len(table) == 0
