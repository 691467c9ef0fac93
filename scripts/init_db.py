# scripts/init_db.py
from sqlalchemy import inspect

from leadflow.db import create_db_and_tables, engine


def main() -> None:
    print("Using engine:", engine.url)

    print("Creating tables...")
    create_db_and_tables()

    insp = inspect(engine)
    print("Tables now in DB:", insp.get_table_names())


if __name__ == "__main__":
    main()
