import asyncio
import json

import pytest

from minerboard.models import LeaderboardSnapshot, MinerRecord, parse_int, placeholder_snapshot
from minerboard.static_export import CURRENT_NAME, StaticExporter, build_static_document, export_static

BIG = 2**90 + 3


def _snapshot(**kwargs):
    kwargs.setdefault("miners", (MinerRecord("0x" + "a" * 40, BIG), MinerRecord("0x" + "b" * 40, 1)))
    kwargs.setdefault("total_hashrate", BIG + 1)
    kwargs.setdefault("generated_at", 1_700_000_000.0)
    kwargs.setdefault("last_scanned_block", 1234)
    return LeaderboardSnapshot(**kwargs)


def test_snapshot_wire_round_trip_keeps_big_ints():
    snap = _snapshot()
    doc = snap.to_dict()
    assert doc["miners"][0] == {"rank": 1, "address": "0x" + "a" * 40, "hashrate": str(BIG)}
    assert doc["lastUpdate"] == "2023-11-14T22:13:20.000Z"
    restored = LeaderboardSnapshot.from_dict(json.loads(json.dumps(doc)))
    assert restored == snap


def test_from_dict_accepts_legacy_shape():
    legacy = {
        "miners": [{"address": "0xABC" + "0" * 37, "totalHashrate": "750000", "workerCount": 7}],
        "totalHashrate": "750000",
        "lastUpdate": "2024-01-01T00:00:00.000Z",
    }
    snap = LeaderboardSnapshot.from_dict(legacy)
    assert snap.miners[0].address == "0xabc" + "0" * 37
    assert snap.miners[0].hashrate == 750_000
    assert snap.source == "cache"
    assert snap.generated_at == 1_704_067_200.0


def test_parse_int_rejects_negative_and_bool():
    assert parse_int("0x10") == 16
    with pytest.raises(ValueError):
        parse_int("-1")
    with pytest.raises(ValueError):
        parse_int(True)


def test_placeholder_dataset():
    snap = placeholder_snapshot(now=0.0)
    assert snap.source == "placeholder"
    assert snap.total_hashrate == 2_600_000
    assert [m.hashrate for m in snap.miners] == [1_000_000, 750_000, 500_000, 250_000, 100_000]


def test_static_document_metadata():
    doc = build_static_document(_snapshot(partial=True), now=1_700_000_000.0)
    assert doc["nextUpdateAfter"] == "2023-11-14T23:13:20.000Z"
    assert doc["metadata"] == {"totalMiners": 2, "lastScannedBlock": 1234, "isPartialUpdate": True}


def test_export_writes_current_and_history(tmp_path):
    target = export_static(_snapshot(), tmp_path / "static", now=1_700_000_000.5)
    assert target.name == CURRENT_NAME
    data = json.loads(target.read_text())
    assert data["miners"][0]["hashrate"] == str(BIG)
    history = sorted(p.name for p in (tmp_path / "static").glob("leaderboard-*.json"))
    assert history == ["leaderboard-2023-11-14T22-13-20-500000Z.json"]


def test_exporter_hook(tmp_path):
    asyncio.run(StaticExporter(tmp_path, history=False)(_snapshot()))
    assert (tmp_path / CURRENT_NAME).exists()
    assert not list(tmp_path.glob("leaderboard-*.json"))
