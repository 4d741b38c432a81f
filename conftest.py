"""File for tests."""

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
import yaml

from devices import RecordingAudio, RecordingGraphics
from generate_golden_fields import rom_from_hex
from processor import ControlUnit, Datapath


def pytest_configure(config: Any) -> None:
    """Configure the tests."""
    config.addinivalue_line(
        "markers",
        "golden_test(pattern): parameterize test with YAML files matching pattern",
    )


def _iter_marker_patterns(node: Any) -> Iterator[str]:
    """Yield pattern strings from golden_test markers on `node`."""
    for m in node.iter_markers(name="golden_test"):
        if m.args:
            yield m.args[0]
        else:
            yield "golden/*.yaml"


def _load_golden(p: Path) -> dict[str, Any]:
    """Load one golden YAML; ROM text is decoded into `__rom__` bytes."""
    try:
        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except Exception as e:
        return {"__yaml_load_error__": str(e), "__path__": str(p)}
    if not isinstance(data, dict):
        return {"__yaml_load_error__": "not a mapping", "__path__": str(p)}
    data.setdefault("__path__", str(p))
    data.setdefault("__name__", p.name)
    if "in_rom" in data:
        try:
            data["__rom__"] = rom_from_hex(data["in_rom"])
        except ValueError as e:
            data["__yaml_load_error__"] = f"bad in_rom: {e}"
    return data


def pytest_generate_tests(metafunc: Any) -> None:
    """Generate tests (parametrization) from YAML golden files."""
    if "golden" not in metafunc.fixturenames:
        return

    patterns: list[str] = list(_iter_marker_patterns(metafunc.definition))
    if not patterns:
        patterns = ["golden/*.yaml"]

    root = Path(metafunc.config.rootpath)

    files: list[Path] = []
    for pat in patterns:
        files.extend(sorted(root.glob(pat)))

    if not files:
        return

    metafunc.parametrize("golden", [_load_golden(p) for p in files], ids=[p.name for p in files])


@pytest.fixture
def gfx() -> RecordingGraphics:
    """Graphics device remembering every pixel call."""
    return RecordingGraphics()


@pytest.fixture
def audio() -> RecordingAudio:
    """Audio device remembering beep edges."""
    return RecordingAudio()


@pytest.fixture
def dp() -> Datapath:
    """Fresh machine state with no ROM."""
    return Datapath()


@pytest.fixture
def cu(dp: Datapath, gfx: RecordingGraphics, audio: RecordingAudio) -> ControlUnit:
    """Control unit at 600 Hz (10 instructions per tick) with a fixed RNG seed."""
    return ControlUnit(dp, gfx, audio, clock_hz=600, seed=1234)
