import argparse
import json
import time
from pathlib import Path

import requests


def load_accounts(accounts_path: Path) -> list[dict]:
    return json.loads(accounts_path.read_text())


def spray(args):
    accounts = load_accounts(Path(args.accounts))
    session = requests.Session()
    total = 0
    locked = set()
    start = time.time()
    for round_no in range(1, args.rounds + 1):
        for account in accounts:
            total += 1
            resp = session.post(f"{args.base}/accounts/{account['account_id']}/failures", json={"kind": "login"}, timeout=5)
            data = resp.json()
            if data.get("locked"):
                locked.add(account["account_id"])
        print(f"round {round_no}: {len(locked)} of {len(accounts)} accounts locked")

    duration = time.time() - start
    print(f"Sent {total} failures in {duration:.2f}s")
    if args.unlock:
        resp = session.post(f"{args.base}/accounts/unlock-all", json={"resetAttempts": True}, timeout=30)
        print(f"unlock-all -> {resp.json()}")


def main():
    parser = argparse.ArgumentParser(description="Spread failed logins across many accounts")
    parser.add_argument("--accounts", default="data/accounts.json", help="path to accounts json")
    parser.add_argument("--rounds", type=int, default=4)
    parser.add_argument("--unlock", action="store_true", help="unlock everything afterwards")
    parser.add_argument("--base", default="http://127.0.0.1:8000", help="API base URL")
    args = parser.parse_args()
    spray(args)


if __name__ == "__main__":
    main()
