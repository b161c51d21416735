"""E-commerce database configuration - reads .env and exposes get_connection() helper."""

import os
from pathlib import Path

import psycopg2
from dotenv import load_dotenv


def _load_env() -> None:
    """Load environment variables from .env file in project root."""
    project_root = Path(__file__).resolve().parent.parent
    env_path = project_root / ".env"
    load_dotenv(env_path)


def get_connection_params() -> dict[str, str | int]:
    """Return database connection parameters from environment."""
    _load_env()
    return {
        "host": os.getenv("DB_HOST", "localhost"),
        "port": int(os.getenv("DB_PORT", "5432")),
        "dbname": os.getenv("DB_NAME", "ecommerce_db"),
        "user": os.getenv("DB_USER", "ecommerce_admin"),
        "password": os.getenv("DB_PASSWORD", ""),
    }


def get_connection() -> psycopg2.extensions.connection:
    """Create and return a new PostgreSQL connection."""
    params = get_connection_params()
    return psycopg2.connect(**params)


def masked_params() -> dict[str, str | int]:
    """Connection parameters with the password replaced by asterisks."""
    params = get_connection_params()
    params["password"] = "*" * len(str(params["password"]))
    return params


if __name__ == "__main__":
    print("Database connection parameters:")
    for key, value in masked_params().items():
        print(f"  {key}: {value}")

    try:
        conn = get_connection()
        print("\nConnection successful!")
        conn.close()
    except psycopg2.OperationalError as e:
        print(f"\nConnection failed (expected if PostgreSQL isn't running yet): {e}")
