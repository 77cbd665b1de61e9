"""
Tests for the Profile Catalog module
"""

import json
import threading
import time
import pytest
from unittest.mock import patch

from roastprofile.catalog import (
    ProfileCatalog,
    ProfileError,
    build_curve,
    generate_id
)
from roastprofile.profile import ProfileCurve, Setpoint
from roastprofile.storage import MemoryStore, StorageError

# Times in seconds, as the API layer sends them
ROAST_SETPOINTS = [
    {"time": 0, "temp": 200, "fanSpeed": 30},
    {"time": 150, "temp": 300, "fanSpeed": 90},
    {"time": 300, "temp": 380, "fanSpeed": 80},
    {"time": 480, "temp": 440, "fanSpeed": 70}
]


class FlakyStore(MemoryStore):
    """Memory store whose writes fail on demand

    ``failures`` maps a key to the number of writes that should report zero
    bytes; -1 fails every write. ``string_delay`` slows string writes down
    so that unsynchronised callers would interleave.
    """

    def __init__(self, capacity=None):
        super().__init__(capacity=capacity)
        self.failures = {}
        self.write_log = []
        self.string_delay = 0

    def _should_fail(self, key):
        remaining = self.failures.get(key, 0)
        if remaining > 0:
            self.failures[key] = remaining - 1
        return remaining != 0

    def put_bytes(self, key, data):
        self.write_log.append(key)
        if self._should_fail(key):
            return 0
        return super().put_bytes(key, data)

    def put_string(self, key, value):
        if self.string_delay:
            time.sleep(self.string_delay)
        if self._should_fail(key):
            return 0
        return super().put_string(key, value)


@pytest.fixture
def store():
    return FlakyStore()

@pytest.fixture
def catalog(store):
    return ProfileCatalog(store)

@pytest.fixture
def populated(catalog):
    """Catalog with three profiles, the first one active"""
    assert catalog.save_existing("AAAAAAAA", "First", ROAST_SETPOINTS, activate=True)
    assert catalog.save_existing("BBBBBBBB", "Second", ROAST_SETPOINTS)
    assert catalog.save_existing("CCCCCCCC", "Third", ROAST_SETPOINTS)
    return catalog

# ID Tests

def test_generate_id_format():
    """Test ids are 8 base-32 characters"""
    profile_id = generate_id()
    assert len(profile_id) == 8
    assert set(profile_id) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZ234567")

def test_generate_id_encoding():
    """Test ids are the first 8 characters of the base-32 encoding"""
    with patch("roastprofile.catalog.manager.secrets.randbits", return_value=0):
        assert generate_id() == "AAAAAAAA"
    with patch("roastprofile.catalog.manager.secrets.randbits", return_value=2 ** 64 - 1):
        assert generate_id() == "77777777"

def test_create_regenerates_colliding_id(populated):
    """Test a generated id already in use is replaced"""
    with patch("roastprofile.catalog.manager.generate_id", side_effect=["BBBBBBBB", "DDDDDDDD"]):
        result = populated.create("Fourth", ROAST_SETPOINTS)
    assert result.success
    assert result.id == "DDDDDDDD"
    assert populated.profile_ids() == ["AAAAAAAA", "BBBBBBBB", "CCCCCCCC", "DDDDDDDD"]

# Validation Tests

def test_build_curve_converts_seconds():
    """Test API setpoints are converted to milliseconds"""
    curve, error = build_curve(ROAST_SETPOINTS)
    assert error is None
    assert curve.setpoints[1] == Setpoint(150000, 300, 90)
    assert curve.setpoint_count == 4

def test_build_curve_accepts_setpoints():
    """Test Setpoint objects are taken as-is"""
    curve, error = build_curve([Setpoint(0, 100, 10), Setpoint(5000, 200, 20)])
    assert error is None
    assert curve.setpoints == [Setpoint(0, 100, 10), Setpoint(5000, 200, 20)]

@pytest.mark.parametrize("spec", [
    None,
    "setpoints",
    [],
    [{"time": 0, "temp": 200}],
    [{"time": "0", "temp": 200, "fanSpeed": 30}],
    [{"time": -1, "temp": 200, "fanSpeed": 30}],
    [{"time": 1.5, "temp": 200, "fanSpeed": 30}],
    [(0, 200, 30)]
])
def test_build_curve_invalid_input(spec):
    """Test malformed setpoint lists"""
    curve, error = build_curve(spec)
    assert curve is None
    assert error == ProfileError.INVALID_INPUT

def test_create_rejects_eleven_setpoints(catalog, store):
    """Test too many setpoints are rejected before anything is written"""
    spec = [{"time": i * 60, "temp": 200 + i, "fanSpeed": 50} for i in range(11)]
    result = catalog.create("Too long", spec)
    assert not result
    assert result.error == ProfileError.INVALID_INPUT
    assert store.keys() == []
    assert store.write_log == []

@pytest.mark.parametrize("setpoint", [
    {"time": 60, "temp": 501, "fanSpeed": 50},
    {"time": 60, "temp": 300, "fanSpeed": 101}
])
def test_create_rejects_out_of_bounds(catalog, store, setpoint):
    """Test one bad setpoint aborts the whole create"""
    result = catalog.create("Hot", ROAST_SETPOINTS[:2] + [setpoint])
    assert result.error == ProfileError.SETPOINT_OUT_OF_BOUNDS
    assert store.keys() == []

def test_create_rejects_setpoints_out_of_order(catalog, store):
    """Test a setpoint earlier than the one before it aborts the create"""
    spec = [
        {"time": 0, "temp": 200, "fanSpeed": 30},
        {"time": 600, "temp": 444, "fanSpeed": 80},
        {"time": 180, "temp": 350, "fanSpeed": 50}
    ]
    result = catalog.create("Backwards", spec)
    assert not result
    assert result.error == ProfileError.INVALID_INPUT
    assert store.keys() == []
    assert store.write_log == []

def test_build_curve_allows_equal_times():
    """Test setpoints sharing a time are kept in order"""
    curve, error = build_curve([
        {"time": 0, "temp": 200, "fanSpeed": 30},
        {"time": 60, "temp": 250, "fanSpeed": 40},
        {"time": 60, "temp": 300, "fanSpeed": 80}
    ])
    assert error is None
    assert curve.setpoint_count == 3
    assert curve.final_target_temperature() == 300

# Create / Save Tests

def test_create_and_load(catalog):
    """Test a created profile can be listed and loaded"""
    result = catalog.create("House Roast", ROAST_SETPOINTS)
    assert result.success
    assert len(result.id) == 8

    profiles = catalog.list()
    assert len(profiles) == 1
    assert profiles[0].id == result.id
    assert profiles[0].name == "House Roast"
    assert not profiles[0].active

    loaded = catalog.load(result.id)
    assert loaded.success
    assert loaded.curve.setpoint_count == 4
    assert loaded.curve.final_target_temperature() == 440

def test_create_does_not_touch_live_profile(catalog):
    """Test creating without activate leaves the live profile alone"""
    catalog.create("Quiet", ROAST_SETPOINTS)
    assert catalog.live_profile.setpoints == [Setpoint(0, 0, 0)]
    assert catalog.active_id == ""

def test_metadata_format(catalog, store):
    """Test metadata is stored as JSON with id and name"""
    catalog.save_existing("AAAAAAAA", "Light City", ROAST_SETPOINTS)
    assert json.loads(store.get_string("pm_AAAAAAAA")) == {"id": "AAAAAAAA", "name": "Light City"}
    assert store.get_string("profile_ids") == "AAAAAAAA"

def test_save_existing_is_idempotent(catalog):
    """Test saving an id twice keeps one index entry and updates the record"""
    catalog.save_existing("AAAAAAAA", "One", ROAST_SETPOINTS)
    catalog.save_existing("AAAAAAAA", "Two", ROAST_SETPOINTS[:2])
    assert catalog.profile_ids() == ["AAAAAAAA"]
    assert catalog.list()[0].name == "Two"
    assert catalog.load("AAAAAAAA").curve.setpoint_count == 2

def test_save_existing_names(catalog):
    """Test blank names default and long names are cut"""
    catalog.save_existing("AAAAAAAA", "  ", ROAST_SETPOINTS)
    catalog.save_existing("BBBBBBBB", "A very long roast profile name", ROAST_SETPOINTS)
    names = {p.id: p.name for p in catalog.list()}
    assert names["AAAAAAAA"] == "Unnamed"
    assert names["BBBBBBBB"] == "A very long roast pr"

def test_save_existing_empty_id(catalog, store):
    """Test an empty id is rejected"""
    result = catalog.save_existing("", "Name", ROAST_SETPOINTS)
    assert result.error == ProfileError.EMPTY_ID
    assert store.keys() == []

def test_save_existing_bad_id(catalog):
    """Test ids that cannot be stored or indexed are rejected"""
    assert catalog.save_existing("A,B", "Name", ROAST_SETPOINTS).error == ProfileError.INVALID_INPUT
    assert catalog.save_existing("X" * 13, "Name", ROAST_SETPOINTS).error == ProfileError.INVALID_INPUT

def test_save_existing_activate(catalog):
    """Test activate copies the curve into the live profile"""
    live = catalog.live_profile
    result = catalog.save_existing("AAAAAAAA", "Live", ROAST_SETPOINTS, activate=True)
    assert result.success
    assert catalog.active_id == "AAAAAAAA"
    assert catalog.live_profile is live
    assert live.setpoint_count == 4
    assert live.final_target_temperature() == 440

# Write Failure Tests

def test_write_retry_recovers(populated, store):
    """Test a failed write is retried after removing the key"""
    store.failures["pf_DDDDDDDD"] = 2
    with patch.object(store, "remove", wraps=store.remove) as remove:
        result = populated.save_existing("DDDDDDDD", "Fourth", ROAST_SETPOINTS)
    assert result.success
    assert store.write_log.count("pf_DDDDDDDD") == 3
    remove.assert_any_call("pf_DDDDDDDD")
    assert populated.profile_ids()[-1] == "DDDDDDDD"
    assert populated.profile_ids()[:3] == ["AAAAAAAA", "BBBBBBBB", "CCCCCCCC"]

def test_eviction_frees_space(populated, store):
    """Test the oldest inactive profile is evicted when retries fail"""
    store.failures["pf_DDDDDDDD"] = 4
    result = populated.save_existing("DDDDDDDD", "Fourth", ROAST_SETPOINTS)
    assert result.success
    assert populated.profile_ids() == ["AAAAAAAA", "CCCCCCCC", "DDDDDDDD"]
    assert not store.is_key("pf_BBBBBBBB")
    assert not store.is_key("pm_BBBBBBBB")
    assert store.is_key("pf_AAAAAAAA")

def test_write_failure_after_eviction(populated, store):
    """Test a failed final write reports storage failure without indexing the id"""
    store.failures["pf_DDDDDDDD"] = -1
    result = populated.save_existing("DDDDDDDD", "Fourth", ROAST_SETPOINTS)
    assert not result
    assert result.error == ProfileError.STORAGE_WRITE_FAILED
    # 1 write + 3 retries + 1 after eviction
    assert store.write_log.count("pf_DDDDDDDD") == 5
    # The evicted victim stays gone
    assert populated.profile_ids() == ["AAAAAAAA", "CCCCCCCC"]
    assert not store.is_key("pf_BBBBBBBB")
    assert not store.is_key("pm_DDDDDDDD")
    assert not store.is_key("pf_DDDDDDDD")

def test_write_failure_without_eviction(store):
    """Test a failed write leaves the catalog unchanged when eviction is off"""
    catalog = ProfileCatalog(store, emergency_eviction=False)
    catalog.save_existing("AAAAAAAA", "First", ROAST_SETPOINTS)
    catalog.save_existing("BBBBBBBB", "Second", ROAST_SETPOINTS)
    store.failures["pf_CCCCCCCC"] = -1

    result = catalog.save_existing("CCCCCCCC", "Third", ROAST_SETPOINTS)
    assert result.error == ProfileError.STORAGE_WRITE_FAILED
    assert catalog.profile_ids() == ["AAAAAAAA", "BBBBBBBB"]
    assert store.write_log.count("pf_CCCCCCCC") == 4

def test_eviction_spares_active_profile(catalog, store):
    """Test the active profile is never evicted"""
    catalog.save_existing("AAAAAAAA", "Active", ROAST_SETPOINTS, activate=True)
    store.failures["pf_BBBBBBBB"] = -1
    result = catalog.save_existing("BBBBBBBB", "New", ROAST_SETPOINTS)
    assert result.error == ProfileError.STORAGE_WRITE_FAILED
    assert catalog.profile_ids() == ["AAAAAAAA"]
    assert store.is_key("pf_AAAAAAAA")

def test_eviction_with_capacity_limit():
    """Test eviction makes room in a store that is actually full"""
    blob_size = len(build_curve(ROAST_SETPOINTS)[0].serialize())
    store = MemoryStore()
    catalog = ProfileCatalog(store)
    catalog.save_existing("AAAAAAAA", "A", ROAST_SETPOINTS, activate=True)
    catalog.save_existing("BBBBBBBB", "B", ROAST_SETPOINTS)
    # Room for everything already stored plus one more index entry, but no new curve
    store.capacity = store.used_bytes() + len(",CCCCCCCC") + len("pm_CCCCCCCC") + 40
    assert blob_size + len("pf_CCCCCCCC") > store.capacity - store.used_bytes()

    result = catalog.save_existing("CCCCCCCC", "C", ROAST_SETPOINTS)
    assert result.success
    assert catalog.profile_ids() == ["AAAAAAAA", "CCCCCCCC"]

def test_backend_error_counts_as_failed_write(catalog, store):
    """Test storage exceptions do not escape the catalog"""
    with patch.object(store, "put_bytes", side_effect=StorageError("flash fault")):
        result = catalog.save_existing("AAAAAAAA", "Broken", ROAST_SETPOINTS)
    assert result.error == ProfileError.STORAGE_WRITE_FAILED
    assert catalog.profile_ids() == []

def test_index_failure_rolls_back_new_profile(populated, store):
    """Test a profile whose id cannot be indexed is removed again"""
    store.failures["profile_ids"] = 1
    result = populated.save_existing("DDDDDDDD", "Fourth", ROAST_SETPOINTS)
    assert result.error == ProfileError.STORAGE_WRITE_FAILED
    assert not store.is_key("pf_DDDDDDDD")
    assert not store.is_key("pm_DDDDDDDD")
    assert populated.profile_ids() == ["AAAAAAAA", "BBBBBBBB", "CCCCCCCC"]

def test_index_failure_keeps_unindexed_data(populated, store):
    """Test the rollback leaves data that was stored before the save"""
    populated.save_existing("DDDDDDDD", "Repaired", ROAST_SETPOINTS)
    store.put_string("profile_ids", "AAAAAAAA,BBBBBBBB,CCCCCCCC")
    store.failures["profile_ids"] = 1

    result = populated.save_existing("DDDDDDDD", "Repaired", ROAST_SETPOINTS[:2])
    assert result.error == ProfileError.STORAGE_WRITE_FAILED
    assert store.is_key("pf_DDDDDDDD")
    assert store.is_key("pm_DDDDDDDD")
    assert populated.get("DDDDDDDD").name == "Repaired"

# Load / Activate Tests

def test_load_missing(catalog):
    """Test loading an unknown or empty id"""
    assert catalog.load("ZZZZZZZZ").error == ProfileError.NOT_FOUND
    assert catalog.load("").error == ProfileError.EMPTY_ID

def test_load_zero_length_blob(catalog, store):
    """Test a zero-length blob is treated as missing"""
    MemoryStore.put_bytes(store, "pf_AAAAAAAA", b"")
    assert catalog.load("AAAAAAAA").error == ProfileError.NOT_FOUND

def test_load_corrupt_blob_is_silent(catalog, store):
    """Test a corrupt blob loads as the empty curve"""
    store.put_bytes("pf_AAAAAAAA", b"\x01\x00\x00\x00\x0b")
    result = catalog.load("AAAAAAAA")
    assert result.success
    assert result.curve.setpoints == [Setpoint(0, 0, 0)]

def test_activate(populated):
    """Test activating replaces the live profile and active id"""
    populated.save_existing("BBBBBBBB", "Second", ROAST_SETPOINTS[:3])
    live = populated.live_profile
    result = populated.activate("BBBBBBBB")
    assert result.success
    assert result.curve is live
    assert populated.active_id == "BBBBBBBB"
    assert live.setpoint_count == 3
    assert populated.profile_ids() == ["AAAAAAAA", "BBBBBBBB", "CCCCCCCC"]

def test_activate_missing(populated):
    """Test activating an unknown id changes nothing"""
    before = populated.live_profile.setpoints
    result = populated.activate("ZZZZZZZZ")
    assert result.error == ProfileError.NOT_FOUND
    assert populated.active_id == "AAAAAAAA"
    assert populated.live_profile.setpoints == before

def test_activate_corrupt_keeps_live_curve(populated, store):
    """Test a corrupt record leaves the live profile unchanged"""
    store.put_bytes("pf_BBBBBBBB", b"\x01\x00\x00\x00\x00")
    before = populated.live_profile.setpoints
    assert populated.activate("BBBBBBBB").success
    assert populated.live_profile.setpoints == before

# Delete Tests

def test_delete_active_rejected(populated, store):
    """Test the active profile cannot be deleted"""
    snapshot = dict(store._data)
    result = populated.delete("AAAAAAAA")
    assert result.error == ProfileError.CANNOT_DELETE_ACTIVE
    assert dict(store._data) == snapshot

def test_delete(populated, store):
    """Test deleting removes data, metadata and index entry"""
    result = populated.delete("BBBBBBBB")
    assert result.success
    assert populated.profile_ids() == ["AAAAAAAA", "CCCCCCCC"]
    assert not store.is_key("pf_BBBBBBBB")
    assert not store.is_key("pm_BBBBBBBB")
    assert populated.active_id == "AAAAAAAA"

def test_delete_missing(populated):
    """Test deleting unknown and empty ids"""
    assert populated.delete("ZZZZZZZZ").error == ProfileError.NOT_FOUND
    assert populated.delete("").error == ProfileError.EMPTY_ID

def test_delete_all(populated, store):
    """Test every record and the selection are removed"""
    populated.delete_all()
    assert store.keys() == []
    assert populated.list() == []
    assert populated.live_profile.setpoints == [Setpoint(0, 0, 0)]

# List / Get / Rename Tests

def test_list_marks_active(populated):
    """Test list is in insertion order with the active flag"""
    profiles = populated.list()
    assert [p.id for p in profiles] == ["AAAAAAAA", "BBBBBBBB", "CCCCCCCC"]
    assert [p.active for p in profiles] == [True, False, False]
    assert [p.name for p in profiles] == ["First", "Second", "Third"]

def test_list_keeps_profiles_without_metadata(populated, store):
    """Test missing or broken metadata shows an empty name"""
    store.remove("pm_BBBBBBBB")
    store.put_string("pm_CCCCCCCC", "{not json")
    names = [p.name for p in populated.list()]
    assert names == ["First", "", ""]

def test_get_detail(populated):
    """Test the detail view reports seconds and skips dummy setpoints"""
    populated.save_existing("DDDDDDDD", "Dummy", [Setpoint(0, 0, 0), Setpoint(60000, 300, 50)])
    detail = populated.get("DDDDDDDD")
    assert detail.name == "Dummy"
    assert not detail.active
    assert detail.setpoints == [{"time": 60, "temp": 300, "fanSpeed": 50}]
    assert populated.get("AAAAAAAA").setpoints == ROAST_SETPOINTS
    assert populated.get("ZZZZZZZZ") is None

def test_rename(populated, store):
    """Test rename only rewrites metadata"""
    data_before = store.get_bytes("pf_BBBBBBBB")
    assert populated.rename("BBBBBBBB", "Renamed").success
    assert populated.list()[1].name == "Renamed"
    assert store.get_bytes("pf_BBBBBBBB") == data_before
    assert populated.profile_ids() == ["AAAAAAAA", "BBBBBBBB", "CCCCCCCC"]

def test_rename_missing_writes_metadata(catalog, store):
    """Test renaming an unknown id still writes metadata without indexing it"""
    assert catalog.rename("ZZZZZZZZ", "Ghost").success
    assert store.is_key("pm_ZZZZZZZZ")
    assert catalog.profile_ids() == []

# Startup Tests

def test_ensure_default_on_empty_catalog(catalog):
    """Test the default profile is created and activated"""
    result = catalog.ensure_default()
    assert result.success

    profiles = catalog.list()
    assert len(profiles) == 1
    assert profiles[0].active
    assert profiles[0].name == "Default"

    loaded = catalog.load(profiles[0].id)
    assert loaded.curve.setpoint_count == 4
    assert loaded.curve.final_target_temperature() == 444
    assert catalog.live_profile.final_target_temperature() == 444

def test_ensure_default_custom_profile(store):
    """Test the default profile can come from configuration"""
    config = {"catalog": {"default_profile": {
        "name": "Light",
        "setpoints": [{"time": 0, "temp": 150, "fanSpeed": 40}, {"time": 300, "temp": 400, "fanSpeed": 60}]
    }}}
    catalog = ProfileCatalog.from_config(store, config)
    catalog.ensure_default()
    assert catalog.list()[0].name == "Light"
    assert catalog.live_profile.final_target_temperature() == 400

def test_ensure_default_drops_orphans(catalog, store):
    """Test ids without stored data are removed from the index"""
    catalog.save_existing("BBBBBBBB", "Kept", ROAST_SETPOINTS)
    store.put_string("profile_ids", "AAAAAAAA,BBBBBBBB,CCCCCCCC")

    result = catalog.ensure_default()
    assert result.success
    assert catalog.profile_ids() == ["BBBBBBBB"]
    assert store.get_string("profile_ids") == "BBBBBBBB"
    assert catalog.active_id == "BBBBBBBB"

def test_ensure_default_picks_first_when_none_active(populated, store):
    """Test the first profile becomes active when none is set"""
    store.remove("active_id")
    populated.live_profile.clear()
    result = populated.ensure_default()
    assert result.id == "AAAAAAAA"
    assert populated.active_id == "AAAAAAAA"
    assert populated.live_profile.setpoint_count == 4

def test_ensure_default_keeps_existing_active(populated):
    """Test an existing valid selection is kept and nothing is created"""
    populated.activate("CCCCCCCC")
    populated.ensure_default()
    assert populated.active_id == "CCCCCCCC"
    assert len(populated.list()) == 3

def test_ensure_default_replaces_dangling_active(populated, store):
    """Test an active id without data falls back to the first profile"""
    store.put_string("active_id", "ZZZZZZZZ")
    populated.ensure_default()
    assert populated.active_id == "AAAAAAAA"

def test_ensure_default_all_orphans(catalog, store):
    """Test a catalog of only orphans gets a fresh default"""
    store.put_string("profile_ids", "AAAAAAAA,BBBBBBBB")
    store.put_string("active_id", "AAAAAAAA")
    catalog.ensure_default()
    profiles = catalog.list()
    assert len(profiles) == 1
    assert profiles[0].name == "Default"
    assert profiles[0].active

def test_ensure_default_skips_ids_in_use(catalog, store):
    """Test the default profile never overwrites stray data"""
    store.put_bytes("pf_AAAAAAAA", b"stray")
    with patch("roastprofile.catalog.manager.generate_id", side_effect=["AAAAAAAA", "DDDDDDDD"]):
        result = catalog.ensure_default()
    assert result.id == "DDDDDDDD"
    assert store.get_bytes("pf_AAAAAAAA") == b"stray"
    assert catalog.profile_ids() == ["DDDDDDDD"]
    assert catalog.active_id == "DDDDDDDD"

def test_live_profile_injection(store):
    """Test an injected live profile is the one updated"""
    live = ProfileCurve()
    catalog = ProfileCatalog(store, live_profile=live)
    catalog.ensure_default()
    assert live.setpoint_count == 4

# Concurrency Tests

def test_concurrent_creates_keep_every_id(store):
    """Test creates from several threads all end up indexed"""
    store.string_delay = 0.005
    catalog = ProfileCatalog(store)
    results = []

    def worker():
        results.append(catalog.create("Batch", ROAST_SETPOINTS))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 8
    assert all(results)
    ids = [result.id for result in results]
    assert len(set(ids)) == 8
    assert sorted(catalog.profile_ids()) == sorted(ids)
    for profile_id in ids:
        assert store.is_key(f"pf_{profile_id}")
        assert store.is_key(f"pm_{profile_id}")
