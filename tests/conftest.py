"""
Pytest fixtures for the cycle-count test suite.

Provides:
- Structured logging configuration and log capture
- Deterministic clock
- Sample expectation lists, catalog and reconciliation oracle
- Session stores (in-memory and SQLite in-memory) and lifecycle wiring
"""

import json
import logging
from datetime import date
from decimal import Decimal
from io import StringIO

import pytest
from sqlalchemy.orm import sessionmaker

from count_config.schema import CountConfig
from count_kernel.db.engine import build_engine, create_tables
from count_kernel.domain.clock import DeterministicClock
from count_kernel.domain.collaborators import InMemoryCatalog, MappingReconciliationOracle
from count_kernel.domain.values import CountMode, Item, Product
from count_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from count_services.lifecycle import SessionLifecycle
from count_services.session_store import InMemorySessionStore, SqlSessionStore

TEST_DAY = date(2025, 12, 15)
TEST_STORE_KEY = "retail_cycle_current_task_test"


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture count_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, lifecycle):
            lifecycle.start()
            logs = captured_logs()
            assert any(r["message"] == "lifecycle_transition" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("count_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Clock fixtures
# =============================================================================


@pytest.fixture
def deterministic_clock():
    return DeterministicClock()


# =============================================================================
# Domain data
# =============================================================================


def make_item(
    identifier: str,
    sku: str | None = None,
    name: str | None = None,
    price: str = "100.00",
    count_mode: CountMode = CountMode.IDENTIFIER_SCAN,
    manual_count: int | None = None,
) -> Item:
    """Build an expectation item with readable defaults."""
    return Item(
        identifier=identifier,
        sku=sku or f"SKU-{identifier}",
        name=name or f"Item {identifier}",
        price=Decimal(price),
        count_mode=count_mode,
        manual_count=manual_count,
    )


@pytest.fixture
def item_factory():
    """Factory fixture wrapping make_item."""
    return make_item


@pytest.fixture
def sample_items() -> tuple[Item, ...]:
    """Two serialized phones and one aggregate-counted case SKU."""
    return (
        make_item("IMEI000000001", sku="PHONE-X", name="Phone X", price="799.00"),
        make_item("IMEI000000002", sku="PHONE-Y", name="Phone Y", price="499.00"),
        make_item(
            "CASE-0001",
            sku="CASE-CLEAR",
            name="Clear case",
            price="19.99",
            count_mode=CountMode.AGGREGATE_QUANTITY,
            manual_count=0,
        ),
    )


@pytest.fixture
def catalog() -> InMemoryCatalog:
    return InMemoryCatalog(
        [
            Product(
                identifier="IMEI000000099",
                sku="PHONE-Z",
                name="Phone Z",
                price=Decimal("999.00"),
            ),
        ]
    )


@pytest.fixture
def oracle() -> MappingReconciliationOracle:
    return MappingReconciliationOracle()


# =============================================================================
# Stores and services
# =============================================================================


@pytest.fixture
def config() -> CountConfig:
    return CountConfig(store_key=TEST_STORE_KEY, database_url="sqlite://")


@pytest.fixture
def session_factory():
    """Session factory over a fresh in-memory SQLite database."""
    engine = build_engine("sqlite://")
    create_tables(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def sql_store(session_factory, deterministic_clock) -> SqlSessionStore:
    return SqlSessionStore(session_factory, TEST_STORE_KEY, deterministic_clock)


@pytest.fixture
def memory_store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def make_lifecycle(catalog, oracle, deterministic_clock, config):
    """Factory fixture: build a SessionLifecycle over a given store."""

    def _make(store, reconciliation_oracle=None, **kwargs) -> SessionLifecycle:
        kwargs.setdefault("clock", deterministic_clock)
        kwargs.setdefault("config", config)
        return SessionLifecycle(store, catalog, reconciliation_oracle or oracle, **kwargs)

    return _make


@pytest.fixture
def lifecycle(make_lifecycle, memory_store, sample_items) -> SessionLifecycle:
    """Lifecycle with today's session opened (PENDING)."""
    engine = make_lifecycle(memory_store)
    engine.open_daily_session(TEST_DAY, sample_items)
    return engine


@pytest.fixture
def counting(lifecycle) -> SessionLifecycle:
    """Lifecycle already moved to IN_PROGRESS."""
    lifecycle.start()
    return lifecycle
