import argparse
import json
import random
from pathlib import Path
import sys


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from lockout_service import db
from lockout_service.config import load_config
from lockout_service.lockout_engine import LockoutEngine
from lockout_service.models import Account, FailureKind
from lockout_service.policy import PolicyStore

first_names = ["Asha", "Ben", "Chen", "Dana", "Eli", "Farah", "Gil", "Hana", "Ivan", "Jo"]
last_names = ["Levi", "Khan", "Park", "Silva", "Cohen", "Nair", "Berg", "Ortiz", "Mori", "Adler"]


def main():
    parser = argparse.ArgumentParser(description="Seed the account directory and some lockout activity")
    parser.add_argument("--accounts", type=int, default=30)
    parser.add_argument("--seed", type=int, default=7)
    args = parser.parse_args()

    cfg = load_config()
    ledger = db.init_db(cfg.db_path)
    policies = PolicyStore.load(ledger, cfg.policy_file)
    engine = LockoutEngine(ledger, policies)
    rng = random.Random(args.seed)

    accounts_out = []
    for idx in range(1, args.accounts + 1):
        name = f"{rng.choice(first_names)} {rng.choice(last_names)}"
        account = Account(account_id=f"acct_{idx:03d}", name=name, email=f"user{idx:03d}@example.com")
        if ledger.get_account(account.account_id) is None:
            ledger.create_account(account)

        # roughly a third of accounts see enough failures to lock
        failures = rng.choice([0, 0, 1, 2, 3, 4, 5, 6])
        kind = FailureKind.PASSWORD_CHANGE if rng.random() < 0.2 else FailureKind.LOGIN
        decision = None
        for _ in range(failures):
            decision = engine.record_failure(account.account_id, kind)

        accounts_out.append(
            {
                **account.model_dump(),
                "failures": failures,
                "kind": kind.value,
                "locked": bool(decision and decision.locked),
                "tier": decision.tier if decision else 0,
            }
        )

    Path("data").mkdir(exist_ok=True)
    with open("data/accounts.json", "w", encoding="utf-8") as f:
        json.dump(accounts_out, f, indent=2)
    locked = sum(1 for a in accounts_out if a["locked"])
    print("Seeded", len(accounts_out), "accounts ->", "data/accounts.json;", locked, "locked")


if __name__ == "__main__":
    main()
