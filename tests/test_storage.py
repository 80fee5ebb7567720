from snapshot_backup.storage import STAGING_PREFIX, FilesystemLayout


def _layout(tmp_path):
    return FilesystemLayout(backup_root=tmp_path / "backups", staging_root=tmp_path / "scratch")


def test_purge_removes_only_prefixed_entries(tmp_path):
    layout = _layout(tmp_path)
    (layout.staging_root / f"{STAGING_PREFIX}old" / "acme").mkdir(parents=True)
    (layout.staging_root / f"{STAGING_PREFIX}stray.tmp").write_text("x", encoding="utf-8")
    (layout.staging_root / "other").mkdir()

    assert layout.purge_stale_staging() == 2
    assert [p.name for p in layout.staging_root.iterdir()] == ["other"]


def test_purge_tolerates_missing_staging_root(tmp_path):
    assert _layout(tmp_path).purge_stale_staging() == 0


def test_created_staging_is_purged_on_the_next_run(tmp_path):
    layout = _layout(tmp_path)
    staging = layout.create_staging()

    layout.purge_stale_staging()

    assert not staging.exists()
