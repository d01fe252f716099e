from __future__ import annotations

import json
from pathlib import Path

import yaml
from click.testing import CliRunner

from cs2hue import __version__
from cs2hue.ui.cli import cli


def _config(tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "data_dir": str(tmp_path),
                "queue": {"post_write_gap_s": 0.0, "verify_backoff_s": 0.001},
                "scene": {"stagger_s": 0.0},
            }
        ),
        encoding="utf-8",
    )
    return path


def test_version() -> None:
    result = CliRunner().invoke(cli, ["--version"], obj={})

    assert result.exit_code == 0
    assert __version__ in result.output


def test_init_colors_refuses_to_overwrite(tmp_path: Path) -> None:
    target = tmp_path / "colors.json"
    runner = CliRunner()

    first = runner.invoke(cli, ["init-colors", str(target)], obj={})
    second = runner.invoke(cli, ["init-colors", str(target)], obj={})
    forced = runner.invoke(cli, ["init-colors", str(target), "--force"], obj={})

    assert first.exit_code == 0
    assert "bomb" in json.loads(target.read_text(encoding="utf-8"))
    assert second.exit_code == 1
    assert forced.exit_code == 0


def test_test_color_with_mock_lights(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        cli, ["--config", str(_config(tmp_path)), "test-color", "menu", "--mock"], obj={}
    )

    assert result.exit_code == 0, result.output
    assert "Applied 'menu'" in result.output


def test_test_color_unknown_name_fails(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        cli, ["--config", str(_config(tmp_path)), "test-color", "nope", "--mock"], obj={}
    )

    assert result.exit_code == 1
    assert "Applied" not in result.output


def test_lights_with_mock_gateway(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["--config", str(_config(tmp_path)), "lights", "--mock"], obj={})

    assert result.exit_code == 0, result.output
    assert "[1]" in result.output
    assert "[3]" in result.output
    assert "unreachable" not in result.output


def test_lights_requires_ids_for_real_gateway(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["--config", str(_config(tmp_path)), "lights"], obj={})

    assert result.exit_code == 1
