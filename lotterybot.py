#!/usr/bin/env python3
"""Run the Discourse lottery engine until interrupted."""

from __future__ import annotations

import asyncio

from forum_lottery.runtime import main


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
