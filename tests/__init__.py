"""Test package for the item chat core."""

import logging
import warnings

warnings.filterwarnings(
    "ignore",
    message=r".*recommended to use web\.AppKey.*",
    category=Warning,
)

logging.getLogger("asyncio").setLevel(logging.ERROR)
