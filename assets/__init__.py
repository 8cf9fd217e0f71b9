"""Checked-in client assets rendered with per-request parameters."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from string import Template

_ASSET_DIR = Path(__file__).resolve().parent

SCORM_API_WRAPPER = "scorm_api_wrapper.js"


@lru_cache(maxsize=None)
def load_template(name: str) -> Template:
    path = _ASSET_DIR / name
    if not path.is_file():
        raise FileNotFoundError(f"Asset template not found: {name}")
    return Template(path.read_text(encoding="utf-8"))


def render(name: str, **params: str) -> str:
    """Substitute ``params`` into the named template; every placeholder must be supplied."""
    return load_template(name).substitute(**params)
