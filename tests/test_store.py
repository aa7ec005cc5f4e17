"""
Tests for the sqlite3 destination store.
"""

import pytest

from conftest import HOOK, make_record
from statusrelay.models import MentionPolicy
from statusrelay.store import DestinationStore, StoreError


class TestDestinationStore:
    def test_empty_store(self, store):
        assert store.load() == []

    def test_insert_and_load(self, store):
        record = make_record(role_id="r1", policy=MentionPolicy.EVERY_UPDATE)
        assert store.insert(record) is True
        assert store.load() == [record]

    def test_no_role_round_trips_as_none(self, store):
        store.insert(make_record())
        loaded = store.load()[0]
        assert loaded.role_id is None
        assert loaded.mention_policy is MentionPolicy.FIRST_UPDATE

    def test_duplicate_hook_rejected(self, store):
        assert store.insert(make_record()) is True
        assert store.insert(make_record(page="https://other.example.com")) is False
        assert len(store.load()) == 1

    def test_delete(self, store):
        store.insert(make_record())
        assert store.delete(HOOK) is True
        assert store.delete(HOOK) is False
        assert store.load() == []

    def test_persists_across_instances(self, tmp_path):
        DestinationStore(tmp_path / "hooks.db").insert(make_record())
        assert len(DestinationStore(tmp_path / "hooks.db").load()) == 1

    def test_unopenable_path_raises(self, tmp_path):
        with pytest.raises(StoreError):
            DestinationStore(tmp_path)
