"""Tests for the face-attendance CLI."""

import json
import logging

import numpy as np
import pytest
from click.testing import CliRunner

from face_attendance import __version__
from face_attendance.cli.main import cli

DIM = 8


@pytest.fixture
def env(tmp_path, monkeypatch):
    """Isolated data home with a small-dimension config."""
    home = tmp_path / "home"
    monkeypatch.setenv("FACE_ATTENDANCE_DATA_HOME", str(home))
    for var in ("FACE_ATTENDANCE_DB", "FACE_ATTENDANCE_REMOTE_URL", "LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)

    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({
        'paths': {
            'data_dir': str(home),
            'database_path': str(home / "data" / "attendance.db"),
            'locks_dir': str(home / "locks"),
        },
        'matching': {'embedding_dim': DIM},
        'logging': {'level': 'ERROR'},
    }))

    yield tmp_path, config_path

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)


@pytest.fixture
def runner():
    return CliRunner()


def save_vector(path, index):
    vector = np.zeros(DIM, dtype=np.float32)
    vector[index] = 1.0
    np.save(path, vector)
    return str(path)


def test_version(runner):
    result = runner.invoke(cli, ["version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_init_creates_config(runner, env):
    tmp_path, _ = env
    result = runner.invoke(cli, ["init"])

    assert result.exit_code == 0
    config_path = tmp_path / "home" / "config.json"
    assert config_path.exists()
    assert json.loads(config_path.read_text())['matching']['accept_threshold'] == 0.65

    again = runner.invoke(cli, ["init"])
    assert "already exists" in again.output


def test_enroll_match_and_queue(runner, env):
    tmp_path, config_path = env
    vector = save_vector(tmp_path / "ada.npy", 0)
    base = ["--config", str(config_path)]

    result = runner.invoke(cli, base + ["enroll", "ABU24001", "--vector", vector, "--name", "Ada"])
    assert result.exit_code == 0, result.output
    assert "Queued 2 mutation(s)" in result.output

    duplicate = runner.invoke(cli, base + ["enroll", "ABU24001", "--vector", vector])
    assert duplicate.exit_code == 1

    match = runner.invoke(cli, base + ["match", vector])
    assert match.exit_code == 0
    assert json.loads(match.output)[0]['identity_key'] == "ABU24001"

    miss = runner.invoke(cli, base + ["match", save_vector(tmp_path / "other.npy", 1)])
    assert miss.exit_code == 1

    listing = runner.invoke(cli, base + ["queue", "list", "--status", "pending"])
    assert listing.exit_code == 0
    assert "students/" in listing.output
    assert "face_embeddings/" in listing.output


def test_status(runner, env):
    _, config_path = env
    result = runner.invoke(cli, ["--config", str(config_path), "status"])

    assert result.exit_code == 0, result.output
    status = json.loads(result.output)
    assert status['store']['identities'] == 0
    assert status['sync']['counts']['pending'] == 0


def test_queue_clear_requires_flag(runner, env):
    _, config_path = env
    result = runner.invoke(cli, ["--config", str(config_path), "queue", "clear"])
    assert result.exit_code != 0


def test_queue_maintenance(runner, env):
    _, config_path = env
    base = ["--config", str(config_path)]

    assert "Removed 0 synced" in runner.invoke(cli, base + ["queue", "clear", "--synced"]).output
    assert "Requeued 0" in runner.invoke(cli, base + ["queue", "requeue"]).output
    assert runner.invoke(cli, base + ["queue", "purge", "missing"]).exit_code == 1


def test_sync_without_remote(runner, env):
    _, config_path = env
    result = runner.invoke(cli, ["--config", str(config_path), "sync"])
    assert result.exit_code == 1
    assert "base_url" in result.output
