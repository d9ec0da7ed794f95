import os
import sys

import psycopg2
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from portal.errors import RemoteStoreError
from portal.postgres_storage import PostgresStore

DB_NAME = os.getenv("PORTAL_DB_NAME", "counsellor_portal")
ADMIN_DSN = os.getenv("PORTAL_ADMIN_DSN", "dbname=postgres user=postgres password=postgres host=localhost")
SCHEMA_PATH = os.path.join(os.path.dirname(__file__), '..', 'portal', 'schema.sql')


def create_database():
    try:
        conn = psycopg2.connect(ADMIN_DSN)
        conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
        cur = conn.cursor()

        cur.execute("SELECT 1 FROM pg_database WHERE datname = %s", (DB_NAME,))
        if not cur.fetchone():
            print(f"Creating database '{DB_NAME}'...")
            cur.execute(f'CREATE DATABASE "{DB_NAME}"')
            print("✅ Database created.")
        else:
            print(f"ℹ️ Database '{DB_NAME}' already exists.")

        cur.close()
        conn.close()
    except psycopg2.Error as e:
        print(f"❌ Failed to create database: {e}")
        sys.exit(1)


def apply_schema():
    with open(SCHEMA_PATH, 'r') as f:
        schema_sql = f.read()
    try:
        store = PostgresStore()
    except RemoteStoreError as e:
        print(f"❌ {e}")
        sys.exit(1)
    try:
        store.apply_schema(schema_sql)
        print("✅ Schema applied.")
    finally:
        store.close()


if __name__ == "__main__":
    create_database()
    apply_schema()
