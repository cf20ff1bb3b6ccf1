"""Tests for the local state file: checkpoint aging, spot-check and run history."""

import pytest
from recon_check.models import Checkpoint, RunProgress
from recon_check.state import CHECKPOINT_MAX_AGE_MS, MAX_HISTORY, StateStore

TENANT = "https://tenant.example.com"
SAVED_AT = 1_700_000_000_000


@pytest.fixture
def state(tmp_path):
    return StateStore(tmp_path / "state.json")


def checkpoint(date=None):
    return Checkpoint("cookie-20", RunProgress(total_processed=20, matches=20),
                      last_processed_date=date, timestamp=SAVED_AT)


class TestCheckpoint:

    def test_no_state_file(self, state):
        assert state.load_checkpoint(TENANT) is None

    def test_fresh_checkpoint(self, state):
        state.save_checkpoint(checkpoint(), TENANT)
        loaded = state.load_checkpoint(TENANT, now=SAVED_AT + 1000)
        assert loaded.cursor == "cookie-20"
        assert loaded.progress.total_processed == 20

    def test_other_tenant_is_ignored(self, state):
        state.save_checkpoint(checkpoint(), TENANT)
        assert state.load_checkpoint("https://other.example.com", now=SAVED_AT) is None

    def test_trailing_slash_matches_tenant(self, state):
        state.save_checkpoint(checkpoint(), TENANT)
        assert state.load_checkpoint(TENANT + "/", now=SAVED_AT) is not None

    def test_old_checkpoint_keeps_date_anchor(self, state):
        state.save_checkpoint(checkpoint(date="2024-03-01T00:00:00Z"), TENANT)
        loaded = state.load_checkpoint(TENANT, now=SAVED_AT + CHECKPOINT_MAX_AGE_MS + 1)
        assert loaded.cursor == ""
        assert loaded.last_processed_date == "2024-03-01T00:00:00Z"

    def test_old_checkpoint_without_date_is_discarded(self, state):
        state.save_checkpoint(checkpoint(), TENANT)
        assert state.load_checkpoint(TENANT, now=SAVED_AT + CHECKPOINT_MAX_AGE_MS + 1) is None
        assert state.load_checkpoint(TENANT, now=SAVED_AT) is None

    def test_clear(self, state):
        state.save_checkpoint(checkpoint(), TENANT)
        state.clear_checkpoint()
        assert state.load_checkpoint(TENANT, now=SAVED_AT) is None

    def test_unreadable_file_is_ignored(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        assert StateStore(path).load_checkpoint(TENANT) is None


class TestHistory:

    def test_previously_checked_ids(self, state):
        state.record_spot_check("job-1", 2, ["a", "b"], matches=2, mismatches=0)
        state.record_spot_check("job-2", 2, ["b", "c"], matches=1, mismatches=1)
        assert sorted(state.previously_checked_ids()) == ["a", "b", "c"]
        assert state.spot_check_history()[0]["id"] == "job-2"

    def test_run_history_is_capped(self, state):
        for i in range(MAX_HISTORY + 5):
            state.record_run({"id": f"job-{i}"})
        runs = state.run_history()
        assert len(runs) == MAX_HISTORY
        assert runs[0]["id"] == f"job-{MAX_HISTORY + 4}"

    def test_state_file_env_override(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.json"
        monkeypatch.setenv("RECON_STATE_FILE", str(path))
        StateStore().record_run({"id": "job-1"})
        assert path.exists()
