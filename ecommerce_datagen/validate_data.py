"""Data validation - runs consistency checks against a store and prints PASS/FAIL summary.

Validates row counts and the cross-table invariants the generator promises:
every foreign reference resolves, every order total equals the sum of its
line items, and every line item has a positive quantity and a non-negative
price.
"""

import sys

import numpy as np
import psycopg2

from ecommerce_datagen.generate_data import ROW_COUNTS
from ecommerce_datagen.load_data import LOAD_ORDER, PostgresStore, table_meta
from ecommerce_datagen.reports import to_cents

# ── Expected row counts ──────────────────────────────────────
EXPECTED_ROWS: dict[str, int] = {
    **ROW_COUNTS,
    "order_details": ROW_COUNTS["orders"],
}


# ── Consistency checks ───────────────────────────────────────
# Each function returns the number of violating rows.


def dangling_references(store, table: str, column: str) -> int:
    parent = table_meta(table)["references"][column]
    values = store.fetch(table, [column])[column].to_numpy()
    return int((~np.isin(values, store.ids(parent))).sum())


def duplicate_values(store, table: str, column: str) -> int:
    values = store.fetch(table, [column])[column]
    return int(values.duplicated().sum())


def total_mismatches(store) -> int:
    orders = store.fetch("orders", ["order_id", "total_amount"])
    expected = store.order_totals()
    merged = orders.merge(expected, on="order_id", suffixes=("", "_expected"))
    return int((to_cents(merged["total_amount"]) != to_cents(merged["total_amount_expected"])).sum())


def orders_without_details(store) -> int:
    return int((store.order_totals()["line_count"] == 0).sum())


def below_minimum(store, table: str, column: str) -> int:
    minimum = table_meta(table)["minimums"][column]
    return int((store.fetch(table, [column])[column] < minimum).sum())


CONSISTENCY_CHECKS = [
    ("Dangling category_id (products)", lambda s: dangling_references(s, "products", "category_id")),
    ("Dangling customer_id (orders)", lambda s: dangling_references(s, "orders", "customer_id")),
    ("Dangling order_id (order_details)", lambda s: dangling_references(s, "order_details", "order_id")),
    ("Dangling product_id (order_details)", lambda s: dangling_references(s, "order_details", "product_id")),
    ("Duplicate email (customers)", lambda s: duplicate_values(s, "customers", "email")),
    ("Duplicate name (categories)", lambda s: duplicate_values(s, "categories", "name")),
    ("Total mismatch (orders)", total_mismatches),
    ("Orders without line items", orders_without_details),
    ("Quantity < 1 (order_details)", lambda s: below_minimum(s, "order_details", "quantity")),
    ("Negative unit_price (order_details)", lambda s: below_minimum(s, "order_details", "unit_price")),
    ("Negative price (products)", lambda s: below_minimum(s, "products", "price")),
]


def check_row_counts(store, expected: dict[str, int] | None = None) -> list[tuple[str, int, int]]:
    """Return (table, actual, expected) for every table."""
    expected = expected or EXPECTED_ROWS
    return [(table, store.count(table), expected[table]) for table in LOAD_ORDER]


def check_consistency(store) -> list[tuple[str, int, bool]]:
    """Return (check name, violations, passed) for every consistency check."""
    results = []
    for name, check in CONSISTENCY_CHECKS:
        violations = check(store)
        results.append((name, violations, violations == 0))
    return results


# ── Main ─────────────────────────────────────────────────────


def main() -> None:
    print("Connecting to PostgreSQL...")
    try:
        store = PostgresStore.connect()
    except psycopg2.OperationalError as e:
        print(f"\nConnection failed: {e}")
        print("Make sure PostgreSQL is running and .env is configured.")
        sys.exit(1)
    print("Connected.\n")

    # ── 1. Row counts ────────────────────────────────────────
    print("=" * 65)
    print("  ROW COUNTS")
    print("=" * 65)
    print(f"  {'Table':<22} {'Actual':>12} {'Expected':>12}")
    print("-" * 65)

    total_actual = 0
    total_expected = 0
    for table, actual, expected in check_row_counts(store):
        flag = "" if actual == expected else "  *"
        print(f"  {table:<22} {actual:>12,} {expected:>12,}{flag}")
        total_actual += actual
        total_expected += expected

    print("-" * 65)
    print(f"  {'TOTAL':<22} {total_actual:>12,} {total_expected:>12,}")
    print("  (* = differs from expected)\n")

    # ── 2. Consistency checks ────────────────────────────────
    print("=" * 65)
    print("  CONSISTENCY CHECKS")
    print("=" * 65)
    print(f"  {'Check':<40} {'Violations':>12} {'':>6}")
    print("-" * 65)

    results = check_consistency(store)
    pass_count = 0
    for name, violations, passed in results:
        status = "PASS" if passed else "FAIL"
        print(f"  {name:<40} {violations:>12,}  [{status}]")
        pass_count += int(passed)

    print("-" * 65)
    print(f"  {pass_count}/{len(results)} consistency checks passed\n")

    # ── 3. Summary ───────────────────────────────────────────
    print("=" * 65)
    failed = len(results) - pass_count
    if failed == 0:
        print("  RESULT: ALL CHECKS PASSED")
    else:
        print(f"  RESULT: {failed} CHECK(S) FAILED - review above for details")
    print("=" * 65)

    store.close()
    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
