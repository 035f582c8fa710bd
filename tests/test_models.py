from repostudio.models import FileRecord, Repository, format_interval, parse_interval
from repostudio.store import Store


def test_parse_interval_variants():
    assert parse_interval("SystemTime { intervals: 133512345678901234 }") == 133512345678901234
    assert parse_interval("intervals:42") == 42
    assert parse_interval("SystemTime { tv_sec: 1700000000, tv_nsec: 0 }") == 0
    assert parse_interval("") == 0
    assert parse_interval(None) == 0


def test_format_interval_uses_100ns_units():
    assert parse_interval(format_interval(1_000_000_000)) == 10_000_000


def test_file_record_from_backend_dict():
    data = {
        "id": 12,
        "name": "kick.wav",
        "path": "/m/kick.wav",
        "accessible": 0,
        "audio_fingerprint": None,
        "encoding": "WAV",
        "unknown_field": "ignored",
    }
    f = FileRecord.from_dict(data)
    assert f.id == "12"
    assert f.accessible is False
    assert f.needs_fingerprint
    g = f.with_fingerprint("sha1:1")
    assert not g.needs_fingerprint
    assert f.audio_fingerprint is None
    assert FileRecord.from_dict(g.to_dict()) == g


def test_repository_dict():
    r = Repository.from_dict({"id": "r", "name": "Drums", "description": None})
    assert r.to_dict() == {"id": "r", "name": "Drums", "description": ""}


def test_store_notifies_on_change_only():
    s = Store(1, name="n")
    seen = []
    unsubscribe = s.subscribe(seen.append)
    s.set(1)
    s.set(2)
    assert s.update(lambda v: v * 10) == 20
    unsubscribe()
    s.set(3)
    assert seen == [2, 20]


def test_store_listener_errors_do_not_reach_writer():
    s = Store(0)
    seen = []

    def broken(_):
        raise RuntimeError("boom")

    s.subscribe(broken)
    s.subscribe(seen.append)
    s.set(5)
    assert s.get() == 5
    assert seen == [5]
