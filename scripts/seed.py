import sys
import os
import asyncio
from argparse import ArgumentParser
from typing import Optional

# Add the project root to the Python path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from churchbooks.config import Settings
from churchbooks.db.local_store import ACCOUNTS
from churchbooks.services.finance_store import build_finance_store
from churchbooks.services.sample_data import seed_sample_data


async def seed_database(owner_id: str, transactions_per_account: int, seed: Optional[int] = None):
    """
    Fills the local store with sample church accounts and transactions.
    Nothing is sent anywhere; the records wait in the queue for the next sync.
    """
    settings = Settings.from_env()
    finance_store = build_finance_store(settings, online=False)

    try:
        # Check if data exists to prevent duplicate seeding
        if finance_store.store.count(ACCOUNTS) > 0:
            print("Local store appears to be already seeded. Exiting.")
            return

        print("Seeding local store with sample data...")
        counts = await seed_sample_data(
            finance_store, owner_id, transactions_per_account=transactions_per_account, seed=seed
        )
        print(f"Created {counts['accounts']} accounts and {counts['transactions']} transactions.")
        print(f"{finance_store.pending_count} changes queued for upload.")
    finally:
        await finance_store.remote.aclose()


def main():
    parser = ArgumentParser(description="Seed the local store with sample data")
    parser.add_argument('owner_id', help='User id that will own the sample accounts')
    parser.add_argument('--transactions', type=int, default=20, help='Transactions per account (default: 20)')
    parser.add_argument('--seed', type=int, default=None, help='Random seed for repeatable data')
    args = parser.parse_args()

    asyncio.run(seed_database(args.owner_id, args.transactions, args.seed))


if __name__ == "__main__":
    main()
