"""Entry point for ``python -m rubt``."""

from __future__ import annotations

import sys

from rubt.cli.main import main

if __name__ == "__main__":
    sys.exit(main())
