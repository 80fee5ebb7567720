import json

import pytest

from conftest import FakeAPI, make_repo
from snapshot_backup.github import GitHubAPIError
from snapshot_backup.tracker import ChangeTracker, FingerprintError, FingerprintStore, fingerprint_events


def test_fingerprint_is_deterministic_and_key_order_independent():
    first = fingerprint_events([{"id": "1", "type": "PushEvent"}])
    second = fingerprint_events([{"type": "PushEvent", "id": "1"}])
    assert first == second
    assert first != fingerprint_events([{"id": "2", "type": "PushEvent"}])


class TestFingerprintStore:
    def test_missing_file_is_empty(self, tmp_path):
        store = FingerprintStore.load(tmp_path / "fingerprints.json")
        assert len(store) == 0

    @pytest.mark.parametrize("content", ["{not json", "[1, 2]", '{"a/b": 3}', ""])
    def test_corrupt_file_is_empty(self, tmp_path, content):
        path = tmp_path / "fingerprints.json"
        path.write_text(content, encoding="utf-8")

        store = FingerprintStore.load(path)

        assert store.as_dict() == {}

    def test_save_round_trips_and_leaves_no_temp_files(self, tmp_path):
        path = tmp_path / "fingerprints.json"
        store = FingerprintStore(path, {"a/one": "abc"})
        store.set("a/two", "def")

        store.save()

        assert json.loads(path.read_text(encoding="utf-8")) == {"a/one": "abc", "a/two": "def"}
        assert [p.name for p in tmp_path.iterdir()] == ["fingerprints.json"]
        assert FingerprintStore.load(path).get("a/two") == "def"


class TestChangeTracker:
    def test_new_repositories_are_changed(self, tmp_path):
        api = FakeAPI(["a/one", "a/two"])
        tracker = ChangeTracker(api, FingerprintStore.load(tmp_path / "fp.json"))

        changed = tracker.filter_changed([make_repo("a/one"), make_repo("a/two")])

        assert [repo.full_name for repo in changed] == ["a/one", "a/two"]

    def test_second_run_without_activity_is_empty(self, tmp_path):
        api = FakeAPI(["a/one", "a/two"])
        repos = [make_repo("a/one"), make_repo("a/two")]
        tracker = ChangeTracker(api, FingerprintStore.load(tmp_path / "fp.json"))
        tracker.filter_changed(repos)
        tracker.persist()

        again = ChangeTracker(api, FingerprintStore.load(tmp_path / "fp.json"))
        assert again.filter_changed(repos) == []
        assert again.filter_changed(repos) == []

    def test_activity_marks_only_that_repository(self, tmp_path):
        api = FakeAPI(["a/one", "a/two"])
        repos = [make_repo("a/one"), make_repo("a/two")]
        tracker = ChangeTracker(api, FingerprintStore.load(tmp_path / "fp.json"))
        tracker.filter_changed(repos)

        api.events["a/two"] = [{"id": "a/two"}, {"id": "new-push"}]

        assert [repo.full_name for repo in tracker.filter_changed(repos)] == ["a/two"]

    def test_corrupt_store_treats_everything_as_changed(self, tmp_path):
        path = tmp_path / "fp.json"
        path.write_text("\x00garbage", encoding="utf-8")
        api = FakeAPI(["a/one"])

        tracker = ChangeTracker(api, FingerprintStore.load(path))

        assert [repo.full_name for repo in tracker.filter_changed([make_repo("a/one")])] == ["a/one"]

    def test_remote_failure_raises_and_keeps_store(self, tmp_path):
        api = FakeAPI(["a/one"])
        store = FingerprintStore(tmp_path / "fp.json", {"a/one": "old"})
        api.events_error = GitHubAPIError("rate limited", status_code=403)
        tracker = ChangeTracker(api, store)

        with pytest.raises(FingerprintError, match="a/one"):
            tracker.filter_changed([make_repo("a/one")])
        assert store.get("a/one") == "old"

    def test_discard_restores_previous_fingerprints(self, tmp_path):
        api = FakeAPI(["a/one", "a/new"])
        store = FingerprintStore(tmp_path / "fp.json", {"a/one": "old"})
        tracker = ChangeTracker(api, store)
        tracker.filter_changed([make_repo("a/one"), make_repo("a/new")])

        tracker.discard(["a/one", "a/new", "a/unknown"])

        assert store.as_dict() == {"a/one": "old"}
