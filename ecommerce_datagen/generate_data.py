"""E-commerce Data Generation Script

Generates customers, categories, products, orders and order_details in
dependency order, then reconciles every order's total_amount from its line
items. Uses NumPy for all numeric/categorical generation, Faker for text
fields only. Rows are flushed to the store in chunks of CHUNK_SIZE.

Usage: ecommerce-generate [--customers N] [--categories N] [--products N]
                          [--orders N] [--seed N] [--in-memory]
"""

import argparse
import re
import sys
from datetime import datetime

import numpy as np
import pandas as pd
import psycopg2
from faker import Faker
from tqdm import tqdm

from ecommerce_datagen.errors import (
    DataGenerationError,
    InvalidArgument,
    OrphanOrder,
    PrecursorMissing,
    ReferentialViolation,
    UniquenessViolation,
)
from ecommerce_datagen.load_data import FrameStore, PostgresStore

# ============================================================
# Constants
# ============================================================

SEED = 42
CHUNK_SIZE = 100_000

# orders.total_amount and order_details share one count: one line item per order
ROW_COUNTS = {
    "customers": 1_000_000,
    "categories": 100,
    "products": 100_000,
    "orders": 2_500_000,
}

ORDER_WINDOW_DAYS = 1825
PRICE_MIN, PRICE_MAX = 1.00, 1000.00
STOCK_MIN, STOCK_MAX = 1, 500
QUANTITY_MIN, QUANTITY_MAX = 1, 10
DESCRIPTION_NULL_PCT = 0.10

# Initialize generators
rng = np.random.default_rng(SEED)
fake = Faker()
Faker.seed(SEED)


def reseed(seed: int = SEED) -> None:
    """Reset the NumPy and Faker generators so runs are reproducible."""
    global rng
    rng = np.random.default_rng(seed)
    Faker.seed(seed)


# ============================================================
# Vocabulary
# ============================================================

CATEGORY_NAMES = [
    "Electronics", "Books", "Clothing", "Home & Kitchen", "Toys", "Sports",
    "Beauty", "Automotive", "Garden", "Office", "Health", "Grocery",
    "Pet Supplies", "Music", "Jewelry", "Shoes", "Tools", "Baby",
    "Furniture", "Video Games",
]

PRODUCT_ADJECTIVES = [
    "Wireless", "Smart", "Portable", "Premium", "Compact", "Classic", "Ergonomic",
    "Organic", "Deluxe", "Heavy-Duty", "Vintage", "Ultra", "Eco", "Foldable",
    "Digital", "Handmade",
]

PRODUCT_NOUNS = [
    "Headphones", "Speaker", "Monitor", "Keyboard", "Backpack", "Desk Lamp",
    "Water Bottle", "Coffee Maker", "Yoga Mat", "Jacket", "Sneakers", "Blender",
    "Notebook", "Watch", "Drone", "Sunglasses", "Tent", "Board Game",
]

EMAIL_DOMAINS = ["example.com", "mail.test", "shop.example", "inbox.test"]

_NON_ALNUM = re.compile(r"[^a-z0-9]")

# ============================================================
# Helper Functions
# ============================================================


def _require_positive(n, table: str) -> None:
    """Fail fast on non-positive or non-integer row counts."""
    if isinstance(n, bool) or not isinstance(n, (int, np.integer)) or n <= 0:
        raise InvalidArgument(f"{table}: row count must be a positive integer, got {n!r}")


def _live_ids(store, table: str, needed_by: str) -> np.ndarray:
    """Live identifiers of ``table``; empty means the precursor stage never ran."""
    ids = store.ids(table)
    if len(ids) == 0:
        raise PrecursorMissing(f"{needed_by} needs existing {table}; generate {table} first")
    return ids


def _check_references(values: np.ndarray, live_ids: np.ndarray, column: str) -> None:
    dangling = ~np.isin(values, live_ids)
    if dangling.any():
        raise ReferentialViolation(
            f"{column}: {int(dangling.sum())} value(s) do not resolve, "
            f"e.g. {values[dangling][:5].tolist()}"
        )


def _flush(store, table: str, df: pd.DataFrame) -> None:
    """Insert ``df`` in chunks; every chunk is committed before returning."""
    n = len(df)
    for start in tqdm(range(0, n, CHUNK_SIZE), desc=f"  {table}", leave=False):
        store.insert(table, df.iloc[start:start + CHUNK_SIZE])


def _lookup(frame: pd.DataFrame, key: str, value: str, keys: np.ndarray) -> np.ndarray:
    """Map ``keys`` through ``frame[key] -> frame[value]``; unknown keys give NaN."""
    series = pd.Series(frame[value].to_numpy(), index=frame[key].to_numpy())
    return series.reindex(keys).to_numpy()


def _email_local_part(first: str, last: str, seq: int) -> str:
    return f"{_NON_ALNUM.sub('', first.lower())}.{_NON_ALNUM.sub('', last.lower())}.{seq}"


# ============================================================
# Entity factories: categories, customers
# ============================================================


def generate_categories(store, n: int = ROW_COUNTS["categories"]) -> np.ndarray:
    """Insert ``n`` categories; names embed the category_id so they never collide."""
    _require_positive(n, "categories")
    print(f"  Generating categories ({n:,} rows)...")

    category_ids = store.reserve_ids("categories", n)
    bases = rng.choice(CATEGORY_NAMES, size=n)
    df = pd.DataFrame({
        "category_id": category_ids,
        "name": [f"{base} {cid}" for base, cid in zip(bases, category_ids)],
    })
    _flush(store, "categories", df)
    print(f"  Done: categories ({n:,} rows)")
    return category_ids


def generate_customers(store, n: int = ROW_COUNTS["customers"]) -> np.ndarray:
    """Insert ``n`` customers; emails embed the customer_id so they never collide."""
    _require_positive(n, "customers")
    print(f"  Generating customers ({n:,} rows)...")

    customer_ids = store.reserve_ids("customers", n)

    print("  Generating names and password hashes (Faker)...")
    first_names = [fake.first_name() for _ in tqdm(range(n), desc="  First names", leave=False)]
    last_names = [fake.last_name() for _ in tqdm(range(n), desc="  Last names", leave=False)]
    password_hashes = [fake.sha256() for _ in tqdm(range(n), desc="  Passwords", leave=False)]
    domains = rng.choice(EMAIL_DOMAINS, size=n)

    emails = [
        f"{_email_local_part(first, last, cid)}@{domain}"
        for first, last, cid, domain in zip(first_names, last_names, customer_ids, domains)
    ]

    df = pd.DataFrame({
        "customer_id": customer_ids,
        "email": emails,
        "password_hash": password_hashes,
        "first_name": first_names,
        "last_name": last_names,
    })
    _flush(store, "customers", df)
    print(f"  Done: customers ({n:,} rows)")
    return customer_ids


# ============================================================
# Dependent factory: products
# ============================================================


def generate_products(store, n: int = ROW_COUNTS["products"]) -> np.ndarray:
    """Insert ``n`` products, each in a category drawn uniformly from the live set."""
    _require_positive(n, "products")
    category_ids = _live_ids(store, "categories", "products")
    print(f"  Generating products ({n:,} rows over {len(category_ids):,} categories)...")

    product_ids = store.reserve_ids("products", n)
    categories = category_ids[rng.integers(0, len(category_ids), size=n)]
    _check_references(categories, category_ids, "products.category_id")

    adjectives = rng.choice(PRODUCT_ADJECTIVES, size=n)
    nouns = rng.choice(PRODUCT_NOUNS, size=n)
    names = [f"{adj} {noun}" for adj, noun in zip(adjectives, nouns)]

    descriptions = np.array(
        [fake.sentence(nb_words=10) for _ in tqdm(range(n), desc="  Descriptions", leave=False)],
        dtype=object,
    )
    descriptions[rng.random(n) < DESCRIPTION_NULL_PCT] = None

    prices = np.round(rng.uniform(PRICE_MIN, PRICE_MAX, size=n), 2)
    stock = rng.integers(STOCK_MIN, STOCK_MAX + 1, size=n)

    df = pd.DataFrame({
        "product_id": product_ids,
        "category_id": categories,
        "name": names,
        "description": descriptions,
        "price": prices,
        "stock_quantity": stock,
    })
    _flush(store, "products", df)
    print(f"  Done: products ({n:,} rows)")
    return product_ids


# ============================================================
# Order factory
# ============================================================


def generate_orders(store, n: int = ROW_COUNTS["orders"], now: datetime | None = None) -> np.ndarray:
    """Insert ``n`` order headers with a provisional total_amount of 0.

    Each order references a customer drawn uniformly from the live set and
    carries a copy of that customer's name as of now. The copy is never
    refreshed. Order dates fall in the last ORDER_WINDOW_DAYS days and
    increase with order_id.

    Returns the new order ids; line items and totals come later from
    assign_order_details() and reconcile_order_totals().
    """
    _require_positive(n, "orders")
    customer_ids = _live_ids(store, "customers", "orders")
    now = (now or datetime.now()).replace(microsecond=0)
    print(f"  Generating orders ({n:,} rows over {len(customer_ids):,} customers)...")

    order_ids = store.reserve_ids("orders", n)
    customers = customer_ids[rng.integers(0, len(customer_ids), size=n)]
    _check_references(customers, customer_ids, "orders.customer_id")

    print("  Snapshotting customer names...")
    people = store.fetch("customers", ["customer_id", "first_name", "last_name"], ids=np.unique(customers))
    people["full_name"] = people["first_name"] + " " + people["last_name"]
    customer_names = _lookup(people, "customer_id", "full_name", customers)
    if pd.isna(customer_names).any():
        raise ReferentialViolation("orders.customer_id: customer vanished before its name was read")

    offsets = rng.integers(0, ORDER_WINDOW_DAYS * 86_400 + 1, size=n)
    order_dates = np.sort(np.datetime64(now, "s") - offsets * np.timedelta64(1, "s"))

    df = pd.DataFrame({
        "order_id": order_ids,
        "customer_id": customers,
        "order_date": pd.to_datetime(order_dates),
        "customer_name": customer_names,
        "total_amount": 0.0,
    })
    _flush(store, "orders", df)
    print(f"  Done: orders ({n:,} rows)")
    return order_ids


# ============================================================
# Line-item assignment
# ============================================================


def assign_order_details(store, order_ids) -> np.ndarray:
    """Give every order in ``order_ids`` exactly one line item.

    Products are ranked by a random permutation; the k-th order (by id) gets
    the product at position (k - 1) mod Q, so the whole catalog is covered
    before any product repeats. unit_price is the product's price right now.
    """
    order_ids = np.unique(np.asarray(order_ids, dtype=np.int64))
    if len(order_ids) == 0:
        raise InvalidArgument("order_details: no order ids to assign line items to")
    product_ids = _live_ids(store, "products", "order_details")

    known = store.fetch("orders", ["order_id"], ids=order_ids)["order_id"].to_numpy()
    _check_references(order_ids, known, "order_details.order_id")

    existing = store.order_totals(order_ids)
    assigned = existing.loc[existing["line_count"] > 0, "order_id"].tolist()
    if assigned:
        preview = ", ".join(str(i) for i in assigned[:10])
        raise UniquenessViolation(
            f"order_details.order_id: {len(assigned):,} orders already have line items ({preview})"
        )

    n, q = len(order_ids), len(product_ids)
    print(f"  Assigning line items ({n:,} orders over {q:,} products)...")

    permutation = rng.permutation(product_ids)
    chosen = permutation[np.arange(n) % q]

    prices = store.fetch("products", ["product_id", "price"], ids=np.unique(chosen))
    unit_prices = _lookup(prices, "product_id", "price", chosen).astype(np.float64)
    if np.isnan(unit_prices).any():
        raise ReferentialViolation("order_details.product_id: product vanished before its price was read")

    detail_ids = store.reserve_ids("order_details", n)
    df = pd.DataFrame({
        "order_detail_id": detail_ids,
        "order_id": order_ids,
        "product_id": chosen,
        "unit_price": unit_prices,
        "quantity": rng.integers(QUANTITY_MIN, QUANTITY_MAX + 1, size=n),
    })
    _flush(store, "order_details", df)
    print(f"  Done: order_details ({n:,} rows)")
    return detail_ids


# ============================================================
# Aggregate reconciliation
# ============================================================


def reconcile_order_totals(store, order_ids=None) -> pd.DataFrame:
    """Recompute total_amount = ROUND(SUM(unit_price * quantity), 2) and write it back.

    Covers ``order_ids``, or every order when None. Nothing is written if any
    targeted order has no line items. Returns the order_id/total_amount
    frame that was applied.
    """
    ids = None if order_ids is None else np.unique(np.asarray(order_ids, dtype=np.int64))
    scope = "all orders" if ids is None else f"{len(ids):,} orders"
    print(f"  Reconciling order totals ({scope})...")

    totals = store.order_totals(ids)
    if ids is not None:
        _check_references(ids, totals["order_id"].to_numpy(), "orders.order_id")

    orphans = totals.loc[totals["line_count"] == 0, "order_id"]
    if len(orphans):
        raise OrphanOrder(orphans.tolist())

    updates = totals[["order_id", "total_amount"]].reset_index(drop=True)
    if len(updates):
        store.update_values("orders", updates)
    print(f"  Done: {len(updates):,} order totals written")
    return updates


# ============================================================
# Pipeline
# ============================================================


def run_pipeline(store, row_counts: dict[str, int] | None = None, now: datetime | None = None) -> dict[str, int]:
    """Run every stage in dependency order; any failure aborts the run."""
    unknown = sorted(set(row_counts or {}) - set(ROW_COUNTS))
    if unknown:
        raise InvalidArgument(
            f"unknown tables in row counts: {', '.join(unknown)} (expected {', '.join(ROW_COUNTS)})"
        )
    counts = {**ROW_COUNTS, **(row_counts or {})}
    for table, n in counts.items():
        _require_positive(n, table)

    print("\n[1/6] Categories")
    categories = generate_categories(store, counts["categories"])

    print("\n[2/6] Customers")
    customers = generate_customers(store, counts["customers"])

    print("\n[3/6] Products")
    products = generate_products(store, counts["products"])

    print("\n[4/6] Orders")
    order_ids = generate_orders(store, counts["orders"], now=now)

    print("\n[5/6] Order details")
    details = assign_order_details(store, order_ids)

    print("\n[6/6] Reconciliation")
    reconcile_order_totals(store, order_ids)

    return {
        "categories": len(categories),
        "customers": len(customers),
        "products": len(products),
        "orders": len(order_ids),
        "order_details": len(details),
    }


# ============================================================
# Summary
# ============================================================


def print_summary(store, targets: dict[str, int]) -> None:
    """Print row counts for every table against the requested targets."""
    print("\n" + "=" * 60)
    print("GENERATION SUMMARY")
    print("=" * 60)

    total = 0
    for table, target in targets.items():
        count = store.count(table)
        status = "OK" if count >= target else "LOW"
        print(f"  {table:20s} {count:>12,} rows  (target: {target:>12,})  [{status}]")
        total += count

    print(f"  {'TOTAL':20s} {total:>12,} rows")
    print("=" * 60)


# ============================================================
# Main
# ============================================================


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate synthetic e-commerce data.")
    for table, default in ROW_COUNTS.items():
        parser.add_argument(
            f"--{table}", type=int, default=default, metavar="N",
            help=f"rows to generate (default: {default:,})",
        )
    parser.add_argument("--seed", type=int, default=SEED, help=f"random seed (default: {SEED})")
    parser.add_argument(
        "--in-memory", action="store_true",
        help="generate into an in-process store instead of PostgreSQL",
    )
    return parser.parse_args(argv)


def main(argv=None) -> None:
    """Run full data generation pipeline."""
    args = parse_args(argv)
    row_counts = {table: getattr(args, table) for table in ROW_COUNTS}
    reseed(args.seed)

    print("=" * 60)
    print("E-commerce Data Generation")
    print(f"Target: {sum(row_counts.values()) + row_counts['orders']:,} total rows across 5 tables")
    print(f"Seed: {args.seed}")
    print("=" * 60)

    index_defs: list[str] = []
    if args.in_memory:
        store = FrameStore()
    else:
        print("Connecting to PostgreSQL...")
        try:
            store = PostgresStore.connect()
        except psycopg2.OperationalError as e:
            print(f"\nConnection failed: {e}")
            print("Make sure PostgreSQL is running and .env is configured.")
            sys.exit(1)
        print("Connected.\n")
        store.create_schema()
        index_defs = store.drop_indexes()

    try:
        generated = run_pipeline(store, row_counts)
        print_summary(store, generated)
    except DataGenerationError as e:
        print(f"\nGeneration aborted: {e}")
        sys.exit(1)
    finally:
        try:
            if index_defs:
                store.recreate_indexes(index_defs)
        finally:
            store.close()

    print("\nData generation complete.")


if __name__ == "__main__":
    main()
