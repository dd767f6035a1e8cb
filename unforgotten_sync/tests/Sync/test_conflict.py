# test_conflict.py
#
#
# Imports
from datetime import datetime, timedelta, timezone
#
# Third-Party Imports
import pytest
from hypothesis import given, settings, strategies as st
#
# Local Imports
from unforgotten_sync.app.core.Sync.conflict import LastWriteWinsStrategy, Resolution
from unforgotten_sync.app.core.Utils.Utils import format_timestamp
#
#######################################################################################################################
#
# Functions:

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _local(updated_at, is_synced=False, locally_deleted=False, **data):
    return {"id": "x", "updated_at": format_timestamp(updated_at), "is_synced": is_synced,
            "locally_deleted": locally_deleted, "data": {"id": "x", **data}}


def _remote(updated_at, **data):
    return {"id": "x", "updated_at": format_timestamp(updated_at), **data}


@pytest.fixture
def resolver():
    return LastWriteWinsStrategy()


class TestLastWriteWins:

    def test_missing_local_applies_remote(self, resolver):
        assert resolver.resolve("appointment", None, _remote(T0), False) == Resolution.APPLY_REMOTE

    def test_synced_local_applies_remote_even_if_newer(self, resolver):
        local = _local(T0 + timedelta(hours=1), is_synced=True)
        assert resolver.resolve("appointment", local, _remote(T0), False) == Resolution.APPLY_REMOTE

    def test_newer_local_edit_kept(self, resolver):
        local = _local(T0 + timedelta(seconds=1))
        assert resolver.resolve("appointment", local, _remote(T0), True) == Resolution.KEEP_LOCAL

    def test_newer_remote_wins(self, resolver):
        local = _local(T0)
        assert resolver.resolve("appointment", local, _remote(T0 + timedelta(seconds=1)), True) == \
            Resolution.APPLY_REMOTE

    def test_equal_timestamps_remote_wins(self, resolver):
        assert resolver.resolve("appointment", _local(T0), _remote(T0), True) == Resolution.APPLY_REMOTE

    def test_newer_tombstone_kept(self, resolver):
        local = _local(T0 + timedelta(minutes=5), locally_deleted=True)
        assert resolver.resolve("appointment", local, _remote(T0), True) == Resolution.KEEP_LOCAL

    def test_remote_without_timestamp_loses_to_local_edit(self, resolver):
        remote = {"id": "x"}
        assert resolver.resolve("appointment", _local(T0), remote, True) == Resolution.KEEP_LOCAL


class TestFieldRules:

    def test_client_owned_preferences_survive_remote_win(self, resolver):
        local = {"id": "p", "feature_order": ["meds", "mood"], "feature_visibility": {"mood": False},
                 "accent_color_index": 1}
        remote = {"id": "p", "feature_order": ["mood", "meds"], "feature_visibility": {"mood": True},
                  "accent_color_index": 4}
        merged = resolver.merge_fields("user_preferences", local, remote, Resolution.APPLY_REMOTE)
        assert merged["feature_order"] == ["meds", "mood"]
        assert merged["feature_visibility"] == {"mood": False}
        assert merged["accent_color_index"] == 4

    def test_server_owned_role_overrides_kept_local(self, resolver):
        local = {"id": "m", "role": "admin", "user_id": "u"}
        remote = {"id": "m", "role": "viewer", "user_id": "u"}
        merged = resolver.merge_fields("account_member", local, remote, Resolution.KEEP_LOCAL)
        assert merged["role"] == "viewer"

    def test_owner_is_server_owned(self, resolver):
        local = {"id": "a", "owner_user_id": "me", "display_name": "Mine"}
        remote = {"id": "a", "owner_user_id": "them", "display_name": "Theirs"}
        merged = resolver.merge_fields("account", local, remote, Resolution.KEEP_LOCAL)
        assert merged == {"id": "a", "owner_user_id": "them", "display_name": "Mine"}

    def test_other_types_are_whole_record(self, resolver):
        local = {"id": "x", "title": "Local"}
        remote = {"id": "x", "title": "Remote"}
        assert resolver.merge_fields("appointment", local, remote, Resolution.APPLY_REMOTE) == remote
        assert resolver.merge_fields("appointment", local, remote, Resolution.KEEP_LOCAL) == local


offsets = st.integers(min_value=-10_000_000, max_value=10_000_000)


@settings(max_examples=200, deadline=None)
@given(local_offset=offsets, remote_offset=offsets, has_pending=st.booleans(), is_synced=st.booleans())
def test_resolution_is_deterministic_and_ordered(local_offset, remote_offset, has_pending, is_synced):
    resolver = LastWriteWinsStrategy()
    local = _local(T0 + timedelta(milliseconds=local_offset), is_synced=is_synced)
    remote = _remote(T0 + timedelta(milliseconds=remote_offset))

    first = resolver.resolve("appointment", local, remote, has_pending)
    assert first == resolver.resolve("appointment", dict(local), dict(remote), has_pending)

    if is_synced and not has_pending:
        assert first == Resolution.APPLY_REMOTE
    elif local_offset > remote_offset:
        assert first == Resolution.KEEP_LOCAL
    else:
        assert first == Resolution.APPLY_REMOTE


@settings(max_examples=100, deadline=None)
@given(offset=offsets)
def test_equal_timestamps_never_keep_local(offset):
    stamp = T0 + timedelta(milliseconds=offset)
    assert LastWriteWinsStrategy().resolve("appointment", _local(stamp), _remote(stamp), True) == \
        Resolution.APPLY_REMOTE

#
# End of test_conflict.py
#######################################################################################################################
