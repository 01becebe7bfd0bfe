#!/usr/bin/env python3
"""
Database setup script for the Complaint Portal
Run this script once to create the database role, the database and its tables
"""
import asyncio
import asyncpg
import getpass
import sys
import os
from dotenv import load_dotenv

from db import SCHEMA_SQL

load_dotenv()

DB_HOST = os.getenv("DB_HOST", "localhost")
DB_PORT = int(os.getenv("DB_PORT", "5432"))
APP_DB_NAME = os.getenv("APP_DB_NAME", "complaint_system")
APP_DB_USER = os.getenv("APP_DB_USER", "complaint_user")
APP_DB_PASSWORD = os.getenv("APP_DB_PASSWORD", "complaint_password")


async def setup_database():
    """Setup PostgreSQL database, role and tables"""

    # Database configuration
    db_config = {
        'host': DB_HOST,
        'port': DB_PORT,
        'database': 'postgres',  # Connect to default postgres db first
        'user': 'postgres',      # Default postgres user
        'password': os.getenv("POSTGRES_PASSWORD") or getpass.getpass("Enter PostgreSQL password for 'postgres' user: ")
    }

    try:
        # Connect to PostgreSQL
        conn = await asyncpg.connect(**db_config)

        # Create database user
        try:
            await conn.execute(f"CREATE USER {APP_DB_USER} WITH PASSWORD '{APP_DB_PASSWORD}';")
            print(f"✅ Created database user: {APP_DB_USER}")
        except asyncpg.exceptions.DuplicateObjectError:
            print(f"ℹ️  Database user '{APP_DB_USER}' already exists")

        # Create database
        try:
            await conn.execute(f"CREATE DATABASE {APP_DB_NAME} OWNER {APP_DB_USER};")
            print(f"✅ Created database: {APP_DB_NAME}")
        except asyncpg.exceptions.DuplicateDatabaseError:
            print(f"ℹ️  Database '{APP_DB_NAME}' already exists")

        # Grant privileges
        await conn.execute(f"GRANT ALL PRIVILEGES ON DATABASE {APP_DB_NAME} TO {APP_DB_USER};")
        print(f"✅ Granted privileges to {APP_DB_USER}")

        await conn.close()

        # Now connect to the new database to create tables
        db_config['database'] = APP_DB_NAME
        db_config['user'] = APP_DB_USER
        db_config['password'] = APP_DB_PASSWORD

        conn = await asyncpg.connect(**db_config)
        await conn.execute(SCHEMA_SQL)
        print("✅ Created users, complaints, complaint_media and register_users tables")

        await conn.close()
        print("\n🎉 Database setup completed successfully!")
        print("🔑 Update your .env file with:")
        print(f"DATABASE_URL=postgresql://{APP_DB_USER}:{APP_DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{APP_DB_NAME}")

    except Exception as e:
        print(f"❌ Error setting up database: {e}")
        print("\nMake sure PostgreSQL is running and you have the correct credentials.")
        sys.exit(1)


if __name__ == "__main__":
    print("🚀 Setting up Complaint Portal database...")
    asyncio.run(setup_database())
