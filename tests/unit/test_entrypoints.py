import importlib
from pathlib import Path

import pytest
import tomllib

PYPROJECT = Path(__file__).resolve().parents[2] / "pyproject.toml"


@pytest.mark.parametrize("script", ["cs2hue", "cs2hue-server"])
def test_console_script_target_is_importable(script: str) -> None:
    pyproject = tomllib.loads(PYPROJECT.read_text(encoding="utf-8"))
    target = pyproject["project"]["scripts"][script]
    module_name, symbol = target.split(":")

    module = importlib.import_module(module_name)
    entrypoint = getattr(module, symbol)

    assert callable(entrypoint)
