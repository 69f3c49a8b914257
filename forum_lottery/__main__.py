"""Entry point for running the lottery runtime via python -m forum_lottery"""

import asyncio

from forum_lottery.runtime import main

if __name__ == "__main__":
    asyncio.run(main())
