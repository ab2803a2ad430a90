from __future__ import annotations

from typing import Any

import pytest

from alphfolio import token_mappings
from alphfolio.logging_utils import reset_warn_once_cache
from doubles import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def _reset_globals() -> Any:
    reset_warn_once_cache()
    token_mappings.reset_mappings()
    yield
    token_mappings.reset_mappings()
