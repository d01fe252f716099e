"""
Color Templates for CS2Hue.

A color template is a named palette entry (menu, warmup, team colors,
bomb, round outcome, default). Templates are read-only to the
orchestrator; anything missing or disabled is treated as "disabled".
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from cs2hue.core.exceptions import ColorTemplateError

logger = structlog.get_logger()


class ColorTemplate(BaseModel):
    """A single palette entry."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    enabled: bool = True
    on: bool = True
    bri: Optional[int] = Field(default=None, ge=1, le=254)
    x: Optional[float] = None
    y: Optional[float] = None
    ct: Optional[int] = None
    use_ct: bool = Field(default=False, alias="useCt")

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        # Null entries and stray "undefined" keys are dropped, as the GUI writes them
        cleaned = {k: v for k, v in data.items() if v is not None and k != "undefined"}
        xy = cleaned.pop("xy", None)
        if isinstance(xy, (list, tuple)) and len(xy) == 2:
            cleaned.setdefault("x", xy[0])
            cleaned.setdefault("y", xy[1])
        return cleaned

    @property
    def has_xy(self) -> bool:
        return self.x is not None and self.y is not None


class BombStage(BaseModel):
    """Brightness and blink period at a countdown checkpoint."""

    bri: Optional[int] = Field(default=None, ge=1, le=254)
    speed: Optional[int] = Field(default=None, ge=0)


class BombTemplate(ColorTemplate):
    """The bomb entry carries the countdown table on top of its color."""

    initial_time: Optional[int] = Field(default=None, alias="initialTime", gt=0)
    initial_blink_speed: Optional[int] = Field(default=None, alias="initialBlinkSpeed", ge=0)
    initial_stage: Optional[BombStage] = Field(default=None, alias="initialStage")
    stages: Dict[int, BombStage] = Field(default_factory=dict)

    def initial_speed(self) -> Optional[int]:
        if self.initial_stage is not None and self.initial_stage.speed is not None:
            return self.initial_stage.speed
        return self.initial_blink_speed


DEFAULT_COLOR_TEMPLATES: Dict[str, Dict[str, Any]] = {
    "menu": {"bri": 100, "x": 0.3227, "y": 0.329, "useCt": False, "enabled": True},
    "warmup": {"bri": 100, "x": 0.3552, "y": 0.398, "useCt": False, "enabled": True},
    "CT": {"bri": 20, "x": 0.1553, "y": 0.1284, "useCt": False, "enabled": True},
    "T": {"bri": 20, "x": 0.5964, "y": 0.3797, "useCt": False, "enabled": True},
    "bomb": {
        "enabled": True,
        "x": 0.675,
        "y": 0.322,
        "bri": 25,
        "initialTime": 40,
        "initialBlinkSpeed": 1000,
        "stages": {
            "30": {"bri": 20, "speed": 750},
            "20": {"bri": 35, "speed": 500},
            "12": {"bri": 50, "speed": 250},
            "5": {"bri": 100, "speed": 150},
            "2": {"bri": 150, "speed": 0},
        },
    },
    "exploded": {"bri": 100, "x": 0.5, "y": 0.5, "ct": 318, "useCt": False, "enabled": True},
    "defused": {"bri": 100, "x": 0.1553, "y": 0.1284, "useCt": False, "enabled": True},
    "win": {"bri": 254, "x": 0.3246, "y": 0.5805, "useCt": False, "enabled": True},
    "lose": {"bri": 254, "x": 0.6401, "y": 0.33, "useCt": False, "enabled": True},
    "default": {"bri": 100, "x": 0.2952, "y": 0.5825, "useCt": False, "enabled": True},
}


class ColorPalette:
    """Name -> template lookup that never raises for unknown keys."""

    def __init__(self, templates: Dict[str, ColorTemplate]):
        self._templates = dict(templates)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source: str = "<dict>") -> "ColorPalette":
        templates: Dict[str, ColorTemplate] = {}
        for name, raw in data.items():
            if not isinstance(raw, dict):
                logger.warning("Ignoring non-object color entry", name=name, source=source)
                continue
            model = BombTemplate if name == "bomb" else ColorTemplate
            try:
                templates[name] = model.model_validate(raw)
            except ValidationError as e:
                raise ColorTemplateError(source, f"entry '{name}': {e}") from e
        return cls(templates)

    @classmethod
    def defaults(cls) -> "ColorPalette":
        return cls.from_dict(DEFAULT_COLOR_TEMPLATES, source="<defaults>")

    def get(self, name: Optional[str]) -> Optional[ColorTemplate]:
        """Return the enabled template for ``name`` or None."""
        if not name:
            return None
        template = self._templates.get(name)
        if template is None or not template.enabled:
            return None
        return template

    def has(self, name: Optional[str]) -> bool:
        return self.get(name) is not None

    def bomb(self) -> Optional[BombTemplate]:
        template = self.get("bomb")
        return template if isinstance(template, BombTemplate) else None

    def names(self) -> list[str]:
        return list(self._templates)

    def __iter__(self) -> Iterator[str]:
        return iter(self._templates)

    def to_dict(self) -> Dict[str, Any]:
        return {
            name: t.model_dump(by_alias=True, exclude_none=True)
            for name, t in self._templates.items()
        }


def load_color_palette(path: Path) -> ColorPalette:
    """Load color templates from JSON/YAML, falling back to the defaults."""
    if not path.exists():
        logger.warning("Colors file not found, using built-in palette", path=str(path))
        return ColorPalette.defaults()

    try:
        with open(path, encoding="utf-8") as f:
            if path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ColorTemplateError(str(path), str(e)) from e

    if not isinstance(data, dict):
        raise ColorTemplateError(str(path), "top level must be an object")

    return ColorPalette.from_dict(data, source=str(path))


def write_default_palette(path: Path) -> None:
    """Write the built-in palette as a starting colors file."""
    with open(path, "w", encoding="utf-8") as f:
        json.dump(DEFAULT_COLOR_TEMPLATES, f, indent=4)
