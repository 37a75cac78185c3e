"""Entry point for `python -m kubepat`.

Usage:
    python -m kubepat
    kubepat
"""

from __future__ import annotations

import asyncio

from kubepat.app import main


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
