"""Gateway unit and aiohttp integration tests."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
