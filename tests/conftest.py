import json

import pytest

import raid_engine
import raid_store

T0 = 1_700_000_000


def sample_file(**overrides):
    """Data file as exported by the chip station app."""
    data = {
        "raid_id": 27,
        "raid_name": "Spring raid",
        "time_readonly": T0 - 3600,
        "time_finish": T0 + 86400,
        "points": [
            {"number": 1, "type": 1, "penalty": 0, "start": T0, "end": T0 + 86400, "name": "Start"},
            {"number": 2, "type": 3, "penalty": 30, "start": T0, "end": T0 + 86400, "name": "CP1"},
            {"number": 3, "type": 4, "penalty": 60, "start": T0, "end": T0 + 86400, "name": "CP2"},
            {"number": 4, "type": 4, "penalty": 60, "start": T0, "end": T0 + 86400, "name": "CP3"},
            {"number": 5, "type": 2, "penalty": 0, "start": T0, "end": T0 + 86400, "name": "Finish"},
        ],
        "discounts": [{"minutes": 60, "from": 3, "to": 4}],
        "teams": [
            {"number": 11, "name": "Alpha", "members": [{"user_id": 101, "name": "Anna"}, {"user_id": 102, "name": "Boris"}]},
            {"number": 12, "name": "Bravo", "members": [{"user_id": 103, "name": "Vera"}]},
            {"number": 13, "name": "Charlie", "members": [{"user_id": 104, "name": "Gleb"}]},
        ],
        "chips": [
            {"team_number": 11, "team_mask": 3, "point_number": 0, "point_time": T0 - 100},
            {"team_number": 11, "team_mask": 3, "point_number": 1, "point_time": T0},
            {"team_number": 11, "team_mask": 3, "point_number": 2, "point_time": T0 + 3600},
            {"team_number": 11, "team_mask": 3, "point_number": 3, "point_time": T0 + 5400},
            {"team_number": 11, "team_mask": 3, "point_number": 4, "point_time": T0 + 7200},
            {"team_number": 11, "team_mask": 3, "point_number": 5, "point_time": T0 + 10800},
            {"team_number": 12, "team_mask": 1, "point_number": 1, "point_time": T0},
            {"team_number": 12, "team_mask": 1, "point_number": 2, "point_time": T0 + 3000},
            {"team_number": 12, "team_mask": 1, "point_number": 5, "point_time": T0 + 9000},
            {"team_number": 13, "team_mask": 1, "point_number": 1, "point_time": T0},
            {"team_number": 13, "team_mask": 1, "point_number": 2, "point_time": T0 + 4000},
        ],
    }
    data.update(overrides)
    return data


def sample_bytes(**overrides):
    return json.dumps(sample_file(**overrides)).encode("utf-8")


@pytest.fixture
def store(tmp_path, monkeypatch):
    """Empty store persisted to a temp file."""
    monkeypatch.setattr(raid_store, "STORE_FILE", str(tmp_path / "raids.json"))
    for name, empty in (("raids", {}), ("teams", {}), ("participants", {}), ("messages", [])):
        monkeypatch.setattr(raid_store, name, empty)
    raid_store.load_store()
    return raid_store


@pytest.fixture
def loaded_store(store):
    """Store with the sample raid imported."""
    data = raid_engine.parse_data_file(sample_bytes())
    raid = store.get_or_create_raid(data["raid_id"])
    raid_engine.merge_data_file(raid, data)
    for t in data["teams"]:
        store.upsert_team(data["raid_id"], t)
    store.save_store()
    return store
