"""`python -m golden_axe` entrypoint."""

from __future__ import annotations

import anyio

from golden_axe.cli import main

if __name__ == "__main__":
    anyio.run(main)
