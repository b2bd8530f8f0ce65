from __future__ import annotations

import pytest

from logger.filtered_logger import LogLevel, close_logger, configure_logger


@pytest.fixture(autouse=True)
def _reset_shared_logger():
    """Keep logger configuration made by one test (CLI runs, log.yaml) from leaking into the next."""
    yield
    close_logger()
    configure_logger(
        extreme_debug=False,
        scheduler_debug=False,
        engine_debug=False,
        io_debug=False,
        min_level=LogLevel.INFO,
        destination="stdout",
    )
