#!/usr/bin/env python3
"""Script to reset the local chat database.

Usage:
  python scripts/reset_db.py [--force] [--only chats|settings]
"""

import argparse
import os
import sys
from pathlib import Path

# Add project root to sys.path so we can import llmchat packages
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dotenv import load_dotenv

from llmchat.core.database import ChatRepository, ChatRow, SettingRow


def reset_tables(repository: ChatRepository, only: str | None = None) -> None:
    """Drop and recreate the selected tables (all when only is None)."""
    if only is None:
        repository.reset()
        return
    table = {"chats": ChatRow, "settings": SettingRow}[only].__table__
    with repository.get_session() as session:
        session.execute(table.delete())
        session.commit()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Reset the llmchat database.")
    parser.add_argument("--force", "-f", action="store_true", help="Skip confirmation prompt")
    parser.add_argument("--only", choices=["chats", "settings"], help="Only clear one table")
    parser.add_argument("--database-url", help="Override DATABASE_URL")
    args = parser.parse_args(argv)

    load_dotenv(project_root / ".env")
    url = args.database_url or os.environ.get("DATABASE_URL", "sqlite:///data/llmchat.sqlite")

    print("\n⚠️ WARNING: Database Reset ⚠️\n")
    if not args.force:
        target = args.only or "all chat history and settings"
        confirm = input(f"  This will delete {target}. Continue? [y/N]: ")
        if confirm.lower() != "y":
            print("  Skipping reset.")
            return 1

    repository = ChatRepository(url)
    try:
        reset_tables(repository, args.only)
    finally:
        repository.close()

    print("✅ Done!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
