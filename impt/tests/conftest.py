"""
Pytest configuration and fixtures for imptest tests.
"""
from typing import List

import pytest

from impt.imptest.runner import SessionMessage


@pytest.fixture(autouse=True)
def no_build_api_key(monkeypatch):
    """Keep a developer's real API key out of configuration tests."""
    monkeypatch.delenv("IMP_BUILD_API_KEY", raising=False)


@pytest.fixture
def collected() -> List[SessionMessage]:
    return []


@pytest.fixture
def listener(collected):
    return collected.append
