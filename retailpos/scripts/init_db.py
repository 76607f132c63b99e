#!/usr/bin/env python3
"""
Apply the checkout schema and optionally seed a demo catalog.

  python -m retailpos.scripts.init_db --db postgresql://localhost/retailpos
  python -m retailpos.scripts.init_db --business-id shop-1 --seed-demo
"""
import argparse
import sys
from pathlib import Path

import psycopg
from psycopg.rows import dict_row

from retailpos.app.config import settings
from retailpos.app.stores.simulation import DEMO_CATALOG

MIGRATIONS_DIR = Path(__file__).resolve().parents[1] / "db" / "migrations"
DB_URL_DEFAULT = settings.db_url or "postgresql://localhost/retailpos"


def migration_files(directory: Path = MIGRATIONS_DIR) -> list[Path]:
    return sorted(p for p in directory.glob("*.sql") if p.is_file())


def apply_migrations(conn, files: list[Path]) -> int:
    applied = 0
    with conn.transaction():
        for path in files:
            conn.execute(path.read_text(encoding="utf-8"))
            applied += 1
    return applied


def seed_demo_catalog(conn, business_id: str) -> int:
    inserted = 0
    with conn.transaction():
        with conn.cursor() as cur:
            for row in DEMO_CATALOG:
                cur.execute(
                    """
                    INSERT INTO products (id, business_id, name, unit_price, stock, low_stock_threshold)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (business_id, id) DO NOTHING
                    RETURNING id
                    """,
                    (
                        row["id"],
                        business_id,
                        row["name"],
                        row["unit_price"],
                        row["stock"],
                        row["low_stock_threshold"],
                    ),
                )
                if cur.fetchone():
                    inserted += 1
    return inserted


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--db", default=DB_URL_DEFAULT)
    parser.add_argument("--business-id", default="")
    parser.add_argument("--seed-demo", action="store_true", help="Insert the demo catalog for --business-id")
    args = parser.parse_args(argv)

    if args.seed_demo and not args.business_id.strip():
        print("init_db: --seed-demo requires --business-id", file=sys.stderr)
        return 2

    files = migration_files()
    if not files:
        print(f"init_db: no migrations found in {MIGRATIONS_DIR}", file=sys.stderr)
        return 2

    with psycopg.connect(args.db, row_factory=dict_row) as conn:
        n = apply_migrations(conn, files)
        print(f"init_db: applied {n} migration file(s)")
        if args.seed_demo:
            seeded = seed_demo_catalog(conn, args.business_id.strip())
            print(f"init_db: seeded {seeded} demo product(s) for {args.business_id.strip()}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
