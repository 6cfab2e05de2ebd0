"""
Tiny helper script to create the store database and seed starter content.
Usage: python init_db.py
"""

from config import DATABASE_URL
from database import init_db


def main() -> None:
    init_db()
    print(f"Database ready at {DATABASE_URL}")


if __name__ == "__main__":
    main()
