import json
import os
import shutil

import pytest

from ebs_backend.errors import RecordNotFoundError, ValidationError
from ebs_backend.file_storage import FileObjectStore


TEST_BASE = "test_data"   # isolated test directory


def setup_function():
    """Run before each test: clean and recreate test directory."""
    if os.path.exists(TEST_BASE):
        shutil.rmtree(TEST_BASE)
    os.makedirs(TEST_BASE)


def teardown_function():
    """Run after each test: clean up."""
    if os.path.exists(TEST_BASE):
        shutil.rmtree(TEST_BASE)


def test_load_missing_record_raises():
    store = FileObjectStore(base_path=TEST_BASE)

    assert not store.exists("ebs.cfg")
    with pytest.raises(RecordNotFoundError) as e:
        store.load("ebs.cfg")
    assert e.value.key == "ebs.cfg"


def test_save_and_load_roundtrip():
    store = FileObjectStore(base_path=TEST_BASE)
    record = {"Name": "vol1", "EBSID": "vol-0abc", "Snapshots": {}}

    store.save("ebs_volume_vol1.json", record)

    assert store.exists("ebs_volume_vol1.json")
    assert store.load("ebs_volume_vol1.json") == record


def test_save_writes_json_at_key_path():
    store = FileObjectStore(base_path=TEST_BASE)
    store.save("ebs.cfg", {"Root": TEST_BASE, "DefaultVolumeSize": 4294967296})

    expected_path = os.path.join(TEST_BASE, "ebs.cfg")
    assert os.path.exists(expected_path)
    assert not os.path.exists(expected_path + ".tmp")

    with open(expected_path, "r") as f:
        on_disk = json.load(f)
    assert on_disk["DefaultVolumeSize"] == 4294967296


def test_save_overwrites_existing_record():
    store = FileObjectStore(base_path=TEST_BASE)
    store.save("ebs_volume_vol1.json", {"MountPoint": ""})
    store.save("ebs_volume_vol1.json", {"MountPoint": "/mnt/vol1"})

    assert store.load("ebs_volume_vol1.json") == {"MountPoint": "/mnt/vol1"}


def test_save_creates_base_directory():
    """The root directory does not need to exist before the first save."""
    nested = os.path.join(TEST_BASE, "ebs")
    store = FileObjectStore(base_path=nested)

    store.save("ebs.cfg", {"Root": nested})
    assert os.path.isdir(nested)


def test_delete_is_idempotent():
    store = FileObjectStore(base_path=TEST_BASE)
    store.save("ebs_volume_vol1.json", {})

    store.delete("ebs_volume_vol1.json")
    store.delete("ebs_volume_vol1.json")

    assert not store.exists("ebs_volume_vol1.json")


def test_list_ids_filters_prefix_and_suffix():
    store = FileObjectStore(base_path=TEST_BASE)
    for key in ("ebs_volume_b.json", "ebs_volume_a.json", "ebs.cfg", "other_volume_c.json"):
        store.save(key, {})

    # Left behind by an interrupted save
    with open(os.path.join(TEST_BASE, "ebs_volume_c.json.tmp"), "w") as f:
        f.write("{")

    assert store.list_ids("ebs_volume_", ".json") == ["a", "b"]


def test_list_ids_without_base_directory():
    store = FileObjectStore(base_path=os.path.join(TEST_BASE, "missing"))
    assert store.list_ids("ebs_volume_", ".json") == []


def test_rejects_keys_with_path_separator():
    store = FileObjectStore(base_path=TEST_BASE)
    with pytest.raises(ValidationError) as e:
        store.save(os.path.join("..", "escape.json"), {})
    assert e.value.error_code == "INVALID_KEY"
