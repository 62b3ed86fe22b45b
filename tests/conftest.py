"""
Shared fixtures for the turn_watch tests.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import turn_watch as tw  # noqa: E402


@pytest.fixture()
def dirs(tmp_path: Path):
    """Data, source and destination folders in a scratch tree."""
    data = tmp_path / "data"
    source = tmp_path / "savedgames"
    dest = tmp_path / "backup"
    for d in (data, source, dest):
        d.mkdir()
    return data, source, dest


@pytest.fixture()
def make_game(dirs):
    """Create <source>/<name> with the given files (name -> bytes)."""
    _, source, _ = dirs

    def _make(name: str, files: dict) -> Path:
        folder = source / name
        folder.mkdir(exist_ok=True)
        for fname, content in files.items():
            (folder / fname).write_bytes(content)
        return folder

    return _make


@pytest.fixture()
def make_ctx(dirs):
    """Build a DaemonContext over the scratch tree; loggers are closed on teardown."""
    data, source, dest = dirs
    created = []

    def _make(mode: str = "1", hash_store: "tw.HashStore" = None, **settings) -> tw.DaemonContext:
        cfg = tw.DaemonSettings(data_dir=data, watch_events=False, once=True, **settings)
        logger, handler = tw.setup_logger(cfg.log_path)
        created.append(logger)
        ctx = tw.DaemonContext(
            settings=cfg,
            logger=logger,
            log_handler=handler,
            backup=tw.BackupConfig(mode=mode, source=source, destination=dest),
            hash_store=hash_store or tw.HashStore.load(cfg.hash_path, logger),
            files=tw.FileSetMatcher(),
            locked=tw.LockedFileTracker(),
        )
        return ctx

    yield _make

    for logger in created:
        tw.close_logger(logger)
