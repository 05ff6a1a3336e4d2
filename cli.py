from __future__ import annotations

import sys
from pathlib import Path


def _ensure_src_on_path() -> None:
    src_value = str(Path(__file__).resolve().parent / "src")
    if src_value not in sys.path:
        sys.path.insert(0, src_value)


_ensure_src_on_path()

from pagewatcher.cli import _cli_main


if __name__ == "__main__":
    raise SystemExit(_cli_main())
