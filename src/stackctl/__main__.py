"""Allow ``python -m stackctl``."""
from __future__ import annotations

from .cli import app

if __name__ == "__main__":  # pragma: no cover - exercised via console script
    app(prog_name="stackctl")
