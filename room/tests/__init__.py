"""Test package for mixroom unit and integration tests."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
