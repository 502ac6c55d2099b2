# scripts/debug_db.py
import os
import sys

# Add the project root directory to Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from calsync.core.config import settings
from calsync.db.base import engine
from sqlalchemy import inspect

if __name__ == "__main__":
    print("Database URL:", str(settings.SQLALCHEMY_DATABASE_URI))
    print("Tables:", ", ".join(sorted(inspect(engine).get_table_names())) or "(none)")
    sys.stdout.flush()
