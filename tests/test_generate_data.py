"""Unit tests for the data generators.

Tests cover:
- Row-count validation and precursor checks
- Uniqueness of generated unique fields
- Referential integrity against sparse identifier sets
- Customer name snapshots and price snapshots
- Cyclic line-item assignment
- Total reconciliation and its fixed point
- The full pipeline end to end
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import numpy as np
import pandas as pd
import pytest

from ecommerce_datagen import generate_data
from ecommerce_datagen.errors import (
    InvalidArgument,
    OrphanOrder,
    PrecursorMissing,
    ReferentialViolation,
    UniquenessViolation,
)
from ecommerce_datagen.generate_data import (
    assign_order_details,
    generate_categories,
    generate_customers,
    generate_orders,
    generate_products,
    reconcile_order_totals,
    run_pipeline,
)
from ecommerce_datagen.load_data import FrameStore
from ecommerce_datagen.reports import to_cents

from .conftest import FIXED_NOW

pytestmark = pytest.mark.unit


def _details_sum_cents(store: FrameStore) -> pd.Series:
    details = store.fetch("order_details")
    cents = to_cents(details["unit_price"]) * details["quantity"].to_numpy()
    return pd.Series(cents).groupby(details["order_id"].to_numpy()).sum()


class TestEntityFactories:
    """Tests for generate_categories and generate_customers."""

    def test_categories_have_unique_names(self, store: FrameStore) -> None:
        ids = generate_categories(store, 50)

        categories = store.fetch("categories")
        assert len(categories) == 50
        assert categories["name"].is_unique
        assert list(ids) == list(range(1, 51))

    def test_customers_have_unique_emails(self, store: FrameStore) -> None:
        generate_customers(store, 200)

        customers = store.fetch("customers")
        assert len(customers) == 200
        assert customers["email"].is_unique
        assert customers["password_hash"].str.len().eq(64).all()

    def test_email_embeds_customer_id(self, store: FrameStore) -> None:
        generate_customers(store, 10)

        customers = store.fetch("customers")
        for cid, email in zip(customers["customer_id"], customers["email"]):
            assert email.split("@")[0].endswith(f".{cid}")

    def test_repeated_runs_never_collide(self, store: FrameStore) -> None:
        generate_customers(store, 30)
        generate_customers(store, 30)
        generate_categories(store, 25)
        generate_categories(store, 25)

        assert store.fetch("customers")["email"].is_unique
        assert store.fetch("categories")["name"].is_unique
        assert store.count("customers") == 60

    @pytest.mark.parametrize("factory", [generate_categories, generate_customers])
    @pytest.mark.parametrize("n", [0, -3, 2.5, True])
    def test_invalid_row_count(self, store: FrameStore, factory, n) -> None:
        with pytest.raises(InvalidArgument):
            factory(store, n)
        assert store.count("customers") == 0
        assert store.count("categories") == 0


class TestProductFactory:
    """Tests for generate_products."""

    def test_zero_rows_is_invalid(self, store: FrameStore) -> None:
        generate_categories(store, 3)
        with pytest.raises(InvalidArgument):
            generate_products(store, 0)

    def test_requires_categories(self, store: FrameStore) -> None:
        with pytest.raises(PrecursorMissing):
            generate_products(store, 10)
        assert store.count("products") == 0

    def test_zero_rows_checked_before_precursor(self, store: FrameStore) -> None:
        with pytest.raises(InvalidArgument):
            generate_products(store, 0)

    def test_categories_resolve(self, store: FrameStore) -> None:
        generate_categories(store, 4)
        generate_products(store, 200)

        products = store.fetch("products")
        assert products["category_id"].isin(store.ids("categories")).all()

    def test_sparse_category_ids(self, store: FrameStore) -> None:
        """Sampling uses the live identifiers, not 1..count."""
        generate_categories(store, 10)
        store.delete("categories", [1, 2, 3, 4, 5, 6, 7, 8])

        generate_products(store, 100)

        assert set(store.fetch("products")["category_id"]) <= {9, 10}

    def test_price_and_stock_ranges(self, store: FrameStore) -> None:
        generate_categories(store, 2)
        generate_products(store, 500)

        products = store.fetch("products")
        assert products["price"].between(1.0, 1000.0).all()
        assert np.array_equal(to_cents(products["price"]) / 100, products["price"].to_numpy())
        assert products["stock_quantity"].between(1, 500).all()

    def test_some_descriptions_are_null(self, store: FrameStore) -> None:
        generate_categories(store, 2)
        generate_products(store, 1000)

        nulls = store.fetch("products")["description"].isna().mean()
        assert 0.03 < nulls < 0.2


class TestOrderFactory:
    """Tests for generate_orders."""

    def test_requires_customers(self, store: FrameStore) -> None:
        with pytest.raises(PrecursorMissing):
            generate_orders(store, 10, now=FIXED_NOW)

    def test_orders_start_with_zero_total(self, store: FrameStore) -> None:
        generate_customers(store, 10)
        order_ids = generate_orders(store, 50, now=FIXED_NOW)

        orders = store.fetch("orders")
        assert len(order_ids) == 50
        assert (orders["total_amount"] == 0).all()

    def test_order_dates_within_window(self, store: FrameStore) -> None:
        generate_customers(store, 10)
        generate_orders(store, 500, now=FIXED_NOW)

        dates = store.fetch("orders")["order_date"]
        assert dates.min() >= pd.Timestamp(FIXED_NOW - timedelta(days=1825))
        assert dates.max() <= pd.Timestamp(FIXED_NOW)
        assert dates.is_monotonic_increasing

    def test_customer_name_snapshot(self, store: FrameStore) -> None:
        generate_customers(store, 20)
        generate_orders(store, 100, now=FIXED_NOW)

        orders = store.fetch("orders")
        customers = store.fetch("customers")
        merged = orders.merge(customers, on="customer_id")
        assert len(merged) == len(orders)
        assert (merged["customer_name"] == merged["first_name"] + " " + merged["last_name"]).all()

    def test_snapshot_not_resynced_after_rename(self, store: FrameStore) -> None:
        generate_customers(store, 1)
        generate_orders(store, 5, now=FIXED_NOW)
        before = store.fetch("orders")["customer_name"].tolist()

        store.update_values(
            "customers",
            pd.DataFrame({"customer_id": [1], "first_name": ["Renamed"], "last_name": ["Person"]}),
        )

        assert store.fetch("orders")["customer_name"].tolist() == before
        assert "Renamed Person" not in before


class TestLineItemAssignment:
    """Tests for assign_order_details."""

    @pytest.fixture
    def orders(self, store: FrameStore) -> np.ndarray:
        generate_categories(store, 2)
        generate_products(store, 10)
        generate_customers(store, 5)
        return generate_orders(store, 25, now=FIXED_NOW)

    def test_one_detail_per_order(self, store: FrameStore, orders: np.ndarray) -> None:
        assign_order_details(store, orders)

        details = store.fetch("order_details")
        assert len(details) == 25
        assert sorted(details["order_id"]) == sorted(orders)

    def test_cyclic_assignment_covers_catalog(self, store: FrameStore, orders: np.ndarray) -> None:
        assign_order_details(store, orders)

        products = store.fetch("order_details").sort_values("order_id")["product_id"].tolist()
        assert sorted(products[:10]) == list(range(1, 11))
        assert products[10:20] == products[:10]
        assert products[20:25] == products[:5]

    def test_quantity_and_price(self, store: FrameStore, orders: np.ndarray) -> None:
        assign_order_details(store, orders)

        details = store.fetch("order_details")
        assert details["quantity"].between(1, 10).all()
        assert (details["unit_price"] >= 0).all()

        prices = store.fetch("products").set_index("product_id")["price"]
        assert (details["unit_price"].to_numpy() == prices.reindex(details["product_id"]).to_numpy()).all()

    def test_unit_price_is_a_snapshot(self, store: FrameStore, orders: np.ndarray) -> None:
        assign_order_details(store, orders)
        before = store.fetch("order_details")["unit_price"].tolist()

        products = store.fetch("products", ["product_id", "price"])
        products["price"] = products["price"] + 100
        store.update_values("products", products)

        assert store.fetch("order_details")["unit_price"].tolist() == before

    def test_empty_order_set(self, store: FrameStore, orders: np.ndarray) -> None:
        with pytest.raises(InvalidArgument):
            assign_order_details(store, [])

    def test_requires_products(self, store: FrameStore) -> None:
        generate_customers(store, 2)
        order_ids = generate_orders(store, 3, now=FIXED_NOW)
        with pytest.raises(PrecursorMissing):
            assign_order_details(store, order_ids)

    def test_unknown_orders(self, store: FrameStore, orders: np.ndarray) -> None:
        with pytest.raises(ReferentialViolation):
            assign_order_details(store, [orders[0], 9999])
        assert store.count("order_details") == 0

    def test_second_assignment_is_rejected(self, store: FrameStore, orders: np.ndarray) -> None:
        assign_order_details(store, orders)

        with pytest.raises(UniquenessViolation, match="already have line items"):
            assign_order_details(store, orders)
        assert store.count("order_details") == 25

    def test_partly_assigned_orders_are_rejected(self, store: FrameStore, orders: np.ndarray) -> None:
        assign_order_details(store, orders[:5])

        with pytest.raises(UniquenessViolation):
            assign_order_details(store, orders)
        assert store.count("order_details") == 5


class TestReconciliation:
    """Tests for reconcile_order_totals."""

    @pytest.fixture
    def orders(self, store: FrameStore) -> np.ndarray:
        generate_categories(store, 3)
        generate_products(store, 20)
        generate_customers(store, 10)
        return generate_orders(store, 60, now=FIXED_NOW)

    def test_totals_match_line_items(self, store: FrameStore, orders: np.ndarray) -> None:
        assign_order_details(store, orders)
        reconcile_order_totals(store, orders)

        totals = store.fetch("orders").set_index("order_id")["total_amount"]
        expected = _details_sum_cents(store)
        assert (to_cents(totals.reindex(expected.index)) == expected.to_numpy()).all()
        assert (totals > 0).all()

    def test_reconcile_is_a_fixed_point(self, store: FrameStore, orders: np.ndarray) -> None:
        assign_order_details(store, orders)

        first = reconcile_order_totals(store, orders)
        after_first = store.fetch("orders")["total_amount"].tolist()
        second = reconcile_order_totals(store, orders)

        pd.testing.assert_frame_equal(first, second)
        assert store.fetch("orders")["total_amount"].tolist() == after_first

    def test_reconcile_all_orders(self, store: FrameStore, orders: np.ndarray) -> None:
        assign_order_details(store, orders)

        updates = reconcile_order_totals(store)

        assert len(updates) == len(orders)

    def test_orphan_order_aborts_before_writing(self, store: FrameStore, orders: np.ndarray) -> None:
        assign_order_details(store, orders[:-1])

        with pytest.raises(OrphanOrder) as excinfo:
            reconcile_order_totals(store, orders)

        assert excinfo.value.order_ids == [int(orders[-1])]
        assert (store.fetch("orders")["total_amount"] == 0).all()

    def test_unknown_order_ids(self, store: FrameStore, orders: np.ndarray) -> None:
        assign_order_details(store, orders)
        with pytest.raises(ReferentialViolation):
            reconcile_order_totals(store, [orders[0], 12345])


class TestPipeline:
    """End-to-end tests for run_pipeline and main."""

    def test_end_to_end_consistency(self, store: FrameStore) -> None:
        generated = run_pipeline(
            store,
            {"categories": 100, "products": 1_000, "customers": 500, "orders": 2_000},
            now=FIXED_NOW,
        )

        assert generated == {
            "categories": 100,
            "customers": 500,
            "products": 1_000,
            "orders": 2_000,
            "order_details": 2_000,
        }

        products = store.fetch("products")
        orders = store.fetch("orders")
        details = store.fetch("order_details")

        assert products["category_id"].isin(store.ids("categories")).all()
        assert orders["customer_id"].isin(store.ids("customers")).all()
        assert details["order_id"].isin(orders["order_id"]).all()
        assert details["product_id"].isin(products["product_id"]).all()

        expected = _details_sum_cents(store)
        totals = orders.set_index("order_id")["total_amount"].reindex(expected.index)
        assert len(expected) == len(orders)
        assert (to_cents(totals) == expected.to_numpy()).all()

        # 2,000 orders over 1,000 products: every product sold exactly twice
        assert (details["product_id"].value_counts() == 2).all()

    def test_same_seed_same_data(self) -> None:
        counts = {"categories": 3, "customers": 15, "products": 12, "orders": 30}

        generate_data.reseed(99)
        first = FrameStore()
        run_pipeline(first, counts, now=FIXED_NOW)

        generate_data.reseed(99)
        second = FrameStore()
        run_pipeline(second, counts, now=FIXED_NOW)

        for table in ("categories", "customers", "products", "orders", "order_details"):
            pd.testing.assert_frame_equal(first.fetch(table), second.fetch(table))

    def test_invalid_count_aborts_before_any_stage(self, store: FrameStore) -> None:
        with pytest.raises(InvalidArgument):
            run_pipeline(store, {"categories": 5, "orders": 0})

        for table in ("categories", "customers", "products", "orders", "order_details"):
            assert store.count(table) == 0

    @pytest.mark.parametrize("key", ["order_details", "product"])
    def test_unknown_table_in_counts(self, store: FrameStore, key: str) -> None:
        with pytest.raises(InvalidArgument, match=key):
            run_pipeline(store, {"categories": 2, key: 5})

        assert store.count("categories") == 0

    def test_main_in_memory(self, capsys: pytest.CaptureFixture[str]) -> None:
        generate_data.main(
            ["--in-memory", "--categories", "3", "--customers", "10", "--products", "8", "--orders", "20"]
        )

        out = capsys.readouterr().out
        assert "GENERATION SUMMARY" in out
        assert "order_details" in out
        assert "Data generation complete." in out

    def test_main_rejects_bad_count(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as excinfo:
            generate_data.main(["--in-memory", "--products", "0"])

        assert excinfo.value.code == 1
        assert "Generation aborted" in capsys.readouterr().out

    def test_main_restores_indexes_after_failure(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        db = MagicMock()
        db.drop_indexes.return_value = ["CREATE INDEX idx_orders_order_date ON public.orders USING btree (order_date)"]
        monkeypatch.setattr(generate_data.PostgresStore, "connect", classmethod(lambda cls: db))

        def fail(store, n):
            raise PrecursorMissing("categories: forced failure")

        monkeypatch.setattr(generate_data, "generate_categories", fail)

        with pytest.raises(SystemExit) as excinfo:
            generate_data.main(["--categories", "2"])

        assert excinfo.value.code == 1
        assert "Generation aborted" in capsys.readouterr().out
        db.drop_indexes.assert_called_once_with()
        db.recreate_indexes.assert_called_once_with(db.drop_indexes.return_value)
        db.close.assert_called_once_with()
