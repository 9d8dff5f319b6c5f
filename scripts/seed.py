"""Seed database with partner stores and their allow-listed emails."""

from __future__ import annotations

from look.db.migrate import run_migrations
from look.db.seed import load_partners, seed_partners
from look.db.session import create_engine_from_env


def main() -> None:
    engine = create_engine_from_env()
    run_migrations(engine)
    added = seed_partners(engine, load_partners())
    print(f"Seed complete ({added} partner emails)")


if __name__ == "__main__":
    main()
