"""Root pytest configuration: environment defaults applied before app imports."""

import os

# The app's engine and settings resolve lazily; SQLite keeps the suite runnable
# without a PostgreSQL server. Point DATABASE_URL at PostgreSQL for RLS tests.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
