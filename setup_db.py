#!/usr/bin/env python3
"""
Database setup script for Civic Connect
Run this script to create the database, its user and the key-value store table
used when STORE_BACKEND=postgres
"""
import asyncio
import asyncpg
import sys
from dotenv import load_dotenv
import os

load_dotenv()

DB_NAME = os.getenv("SETUP_DB_NAME", "civic_connect_db")
DB_USER = os.getenv("SETUP_DB_USER", "civic_user")
DB_PASSWORD = os.getenv("SETUP_DB_PASSWORD", "civic_password")


async def setup_database():
    """Setup PostgreSQL database and user"""

    # Database configuration
    db_config = {
        'host': os.getenv("SETUP_DB_HOST", "localhost"),
        'port': int(os.getenv("SETUP_DB_PORT", "5432")),
        'database': 'postgres',  # Connect to default postgres db first
        'user': 'postgres',      # Default postgres user
        'password': input("Enter PostgreSQL password for 'postgres' user: ")
    }

    try:
        conn = await asyncpg.connect(**db_config)

        # Create database user
        try:
            await conn.execute(f"CREATE USER {DB_USER} WITH PASSWORD '{DB_PASSWORD}';")
            print(f"✅ Created database user: {DB_USER}")
        except asyncpg.exceptions.DuplicateObjectError:
            print(f"ℹ️  Database user '{DB_USER}' already exists")

        # Create database
        try:
            await conn.execute(f"CREATE DATABASE {DB_NAME} OWNER {DB_USER};")
            print(f"✅ Created database: {DB_NAME}")
        except asyncpg.exceptions.DuplicateDatabaseError:
            print(f"ℹ️  Database '{DB_NAME}' already exists")

        await conn.execute(f"GRANT ALL PRIVILEGES ON DATABASE {DB_NAME} TO {DB_USER};")
        print(f"✅ Granted privileges to {DB_USER}")

        await conn.close()

        # Now connect to the new database to create the store table
        db_config['database'] = DB_NAME
        db_config['user'] = DB_USER
        db_config['password'] = DB_PASSWORD

        conn = await asyncpg.connect(**db_config)

        await conn.execute('''
            CREATE TABLE IF NOT EXISTS kv_store (
                key VARCHAR(100) PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
            );
        ''')

        # Both ledgers start out empty so readers never see a missing key
        for ledger_key in ("user_complaints", "admin_complaints"):
            await conn.execute(
                "INSERT INTO kv_store (key, value) VALUES ($1, '[]') ON CONFLICT (key) DO NOTHING",
                ledger_key,
            )

        print("✅ Created kv_store table with empty ledgers")

        await conn.close()
        print("\n🎉 Database setup completed successfully!")
        print("🔑 Update your .env file with:")
        print("STORE_BACKEND=postgres")
        print(f"DATABASE_URL=postgresql://{DB_USER}:{DB_PASSWORD}@{db_config['host']}:{db_config['port']}/{DB_NAME}")

    except Exception as e:
        print(f"❌ Error setting up database: {e}")
        print("\nMake sure PostgreSQL is running and you have the correct credentials.")
        sys.exit(1)

if __name__ == "__main__":
    print("🚀 Setting up Civic Connect database...")
    asyncio.run(setup_database())
