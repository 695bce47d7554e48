import random
from unittest.mock import MagicMock

import pytest

from selfheal.config import ExecutorOptions
from selfheal.executor import ToolExecutor
from selfheal.models import PageSnapshot


@pytest.fixture
def driver():
    mock = MagicMock()
    mock.page_state.return_value = PageSnapshot(url="https://shop.test/cart", title="Cart")
    mock.read_text.return_value = "Hello"
    return mock


@pytest.fixture
def fast_options():
    return ExecutorOptions(max_attempts=3, initial_delay=0.001, max_delay=0.005, timeout_per_attempt=1.0)


@pytest.fixture
def executor(driver, fast_options):
    with ToolExecutor(driver, options=fast_options, rng=random.Random(7)) as ex:
        yield ex
