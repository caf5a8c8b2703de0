"""Run the forge loop runner from a source checkout, without installing it.

Usage: ``python start.py [--cwd DIR] run|status|reset ...``
"""

from __future__ import annotations

import sys
from pathlib import Path

SRC = Path(__file__).resolve().parent / "src"
if SRC.is_dir() and str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def run(argv: list[str] | None = None) -> int:
    from forgeloop.cli import main

    return main(sys.argv[1:] if argv is None else argv)


if __name__ == "__main__":
    raise SystemExit(run())
