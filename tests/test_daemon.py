"""Tests for daemon wiring and the command-line entry point."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from memkeeper.__main__ import main
from memkeeper.config import MemkeeperConfig
from memkeeper.daemon import MemkeeperDaemon
from memkeeper.scheduler.jobs import RefinementJob


@pytest.fixture
def config(tmp_path: Path) -> MemkeeperConfig:
    return MemkeeperConfig(memory_dir=tmp_path / "memory", pid_file=tmp_path / "memkeeper.pid")


class TestMemkeeperDaemon:
    def test_build_job(self, config: MemkeeperConfig):
        with patch("anthropic.Anthropic"):
            job = MemkeeperDaemon(config).build_job()
        assert isinstance(job, RefinementJob)
        assert job.engine.name == "anthropic_api"
        assert job.store.root == config.memory_dir

    def test_pid_file_roundtrip(self, config: MemkeeperConfig):
        daemon = MemkeeperDaemon(config)
        daemon._write_pid()
        assert config.pid_file.read_text() == str(os.getpid())
        daemon._remove_pid()
        assert not config.pid_file.exists()

    def test_stale_pid_file_removed(self, config: MemkeeperConfig):
        config.pid_file.write_text("not-a-pid")
        MemkeeperDaemon(config)._check_existing()
        assert not config.pid_file.exists()


class TestMain:
    def test_usage(self, monkeypatch, capsys):
        monkeypatch.setattr("sys.argv", ["memkeeper"])
        with pytest.raises(SystemExit) as exc:
            main()
        assert exc.value.code == 1
        assert "Usage" in capsys.readouterr().out
