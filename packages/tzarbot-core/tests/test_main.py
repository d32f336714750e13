"""Tests for the command-line entry point."""

import json

from tzarbot.main import cli


def _write_config(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "workers": {"pool_capacity": 2, "ready_poll_interval_s": 0.01, "recovery_delay_s": 0.0},
                "evaluation": {"games_per_evaluation": 2, "retry": {"base_delay_s": 0.0}},
                "network": {"input_size": 8, "hidden_layers": [4], "action_head_size": 3, "min_neurons": 1},
                "evolution": {"population_size": 4, "seed": 5},
                "checkpoint": {"path": str(tmp_path / "checkpoint.json")},
                "archive_path": str(tmp_path / "archive.db"),
            }
        )
    )
    return path


def test_run_simulated_then_inspect(tmp_path, capsys):
    config = _write_config(tmp_path)

    assert cli(["run", "--simulate", "--generations", "2", "--config", str(config)]) == 0
    out = capsys.readouterr().out
    assert "Stopped at generation 2" in out
    assert "Gen 1:" in out
    assert (tmp_path / "archive.db").exists()

    assert cli(["run", "--simulate", "--generations", "3", "--resume", "--config", str(config)]) == 0
    assert "Stopped at generation 3" in capsys.readouterr().out

    assert cli(["inspect-checkpoint", str(tmp_path / "checkpoint.json")]) == 0
    assert "Generation: 3" in capsys.readouterr().out


def test_run_requires_simulation(tmp_path, capsys):
    assert cli(["run", "--config", str(_write_config(tmp_path))]) == 1
    assert "--simulate" in capsys.readouterr().err


def test_inspect_missing_checkpoint(tmp_path):
    assert cli(["inspect-checkpoint", str(tmp_path / "nope.json")]) == 1


def test_corrupt_checkpoint_fails_startup(tmp_path, capsys):
    path = tmp_path / "checkpoint.json"
    path.write_text("garbage")
    assert cli(["inspect-checkpoint", str(path)]) == 1
    assert "corrupt" in capsys.readouterr().err


def test_bad_environment_setting_fails_startup(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("TZARBOT_POOL_CAPACITY", "abc")
    assert cli(["inspect-checkpoint", str(tmp_path / "checkpoint.json")]) == 1
    assert "pool_capacity" in capsys.readouterr().err
