# main.py
"""
Entry point for running the fashion trend API with uvicorn.

    python main.py              # serve on $HOST:$PORT (default 0.0.0.0:8080)
    python main.py --init-db    # create the pgvector extension and tables, then exit
"""

import argparse
import asyncio
import os

import uvicorn

from src.db import initialize_database


def main() -> None:
    parser = argparse.ArgumentParser(description="Fashion trend API")
    parser.add_argument("--init-db", action="store_true", help="create database tables and exit")
    args = parser.parse_args()

    if args.init_db:
        asyncio.run(initialize_database())
        return

    uvicorn.run(
        "api.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8080")),
    )


if __name__ == "__main__":
    main()
