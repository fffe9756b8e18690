import random
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, Optional

from faker import Faker

from churchbooks.crud.crud_category import seed_default_categories
from churchbooks.db.core import AccountType, CategoryType, TransactionType
from churchbooks.models.account import AccountCreate
from churchbooks.models.transaction import TransactionCreate
from churchbooks.services.finance_store import FinanceStore
from churchbooks.logging_config import get_logger

logger = get_logger(__name__)

CHURCH_ACCOUNTS = [
    ("General Fund", AccountType.CHECKING),
    ("Building Fund", AccountType.SAVINGS),
    ("Missions Fund", AccountType.SAVINGS),
    ("Petty Cash", AccountType.CASH),
]


async def seed_sample_data(finance_store: FinanceStore, owner_id: str, transactions_per_account: int = 20,
                           seed: Optional[int] = None) -> Dict[str, int]:
    """
    Fill the books with plausible church data through the finance store, so
    every record is queued for upload exactly like a user's own entries.
    """
    fake = Faker()
    rng = random.Random(seed)
    if seed is not None:
        Faker.seed(seed)

    finance_store.owner_id = owner_id
    seed_default_categories(finance_store.store, finance_store.clock())
    finance_store.reload_from_local()

    income_categories = [c.id for c in finance_store.categories if c.type == CategoryType.INCOME]
    expense_categories = [c.id for c in finance_store.categories if c.type == CategoryType.EXPENSE]

    accounts = []
    for name, account_type in CHURCH_ACCOUNTS:
        opening = Decimal(rng.randint(50_000, 500_000)) / 100
        accounts.append(await finance_store.create_account(
            AccountCreate(name=name, type=account_type, initial_balance=opening)
        ))

    created = 0
    start = date.today() - timedelta(days=180)
    for account in accounts:
        for _ in range(transactions_per_account):
            roll = rng.random()
            amount = Decimal(rng.randint(500, 75_000)) / 100
            when = start + timedelta(days=rng.randint(0, 180))

            if roll < 0.45:
                data = TransactionCreate(
                    account_id=account.id, type=TransactionType.INCOME, amount=amount,
                    category_id=rng.choice(income_categories),
                    description=f"Offering - {fake.first_name()} {fake.last_name()}", date=when,
                )
            elif roll < 0.9:
                data = TransactionCreate(
                    account_id=account.id, type=TransactionType.EXPENSE, amount=amount,
                    category_id=rng.choice(expense_categories),
                    description=f"{fake.company()} - {fake.bs()}", date=when,
                )
            else:
                target = rng.choice([a for a in accounts if a.id != account.id])
                data = TransactionCreate(
                    account_id=account.id, target_account_id=target.id, type=TransactionType.TRANSFER,
                    amount=amount, description=f"Transfer to {target.name}", date=when,
                )
            await finance_store.create_transaction(data)
            created += 1

    logger.info(f"Seeded {len(accounts)} accounts and {created} transactions for {owner_id}")
    return {"accounts": len(accounts), "transactions": created}
