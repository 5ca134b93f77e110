"""Conftest for unit tests - mark every test as unit and isolate trace context."""

import pytest

from crawl_engine.observability.context import trace_context


def pytest_collection_modifyitems(config, items):
    """Automatically mark all tests in the unit directory as unit tests."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)


@pytest.fixture(autouse=True)
def reset_trace_context():
    """Job ids bound by one test must not leak into the next test's log records."""
    token = trace_context.set(None)
    yield
    trace_context.reset(token)
