"""Shared fixtures for the generator tests."""

from __future__ import annotations

from datetime import datetime

import pandas as pd
import pytest

from ecommerce_datagen import generate_data
from ecommerce_datagen.load_data import FrameStore

FIXED_NOW = datetime(2025, 6, 30, 12, 0, 0)


@pytest.fixture(autouse=True)
def _seeded() -> None:
    """Every test starts from the same random state."""
    generate_data.reseed(1234)


@pytest.fixture
def store() -> FrameStore:
    return FrameStore()


@pytest.fixture
def populated_store(store: FrameStore) -> FrameStore:
    """A small but complete dataset: every stage of the pipeline has run."""
    generate_data.run_pipeline(
        store,
        {"categories": 5, "customers": 40, "products": 30, "orders": 120},
        now=FIXED_NOW,
    )
    return store


@pytest.fixture
def one_customer(store: FrameStore) -> int:
    ids = store.insert(
        "customers",
        pd.DataFrame({
            "email": ["ada@example.com"],
            "password_hash": ["x"],
            "first_name": ["Ada"],
            "last_name": ["Lovelace"],
        }),
    )
    return int(ids[0])
