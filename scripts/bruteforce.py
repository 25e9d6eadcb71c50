import argparse
import time

import requests


def attack(args):
    session = requests.Session()
    start = time.time()
    for total in range(1, args.attempts + 1):
        resp = session.post(
            f"{args.base}/accounts/{args.account_id}/failures",
            json={"kind": args.kind},
            timeout=5,
        )
        data = resp.json()
        if resp.status_code != 200:
            print(f"[{total}] HTTP {resp.status_code}: {data.get('detail')}")
            continue
        state = f"locked tier {data['tier']} until {data['lockedUntil']}" if data["locked"] else "counted"
        print(f"[{total}] attempts={data['attempts']} -> {state}")

    status = session.get(f"{args.base}/accounts/{args.account_id}/status", timeout=5).json()
    duration = time.time() - start
    print(f"Final status after {args.attempts} failures in {duration:.2f}s: {status}")


def main():
    parser = argparse.ArgumentParser(description="Report repeated failures for a single account")
    parser.add_argument("account_id")
    parser.add_argument("--attempts", type=int, default=8)
    parser.add_argument("--kind", choices=["login", "password_change"], default="login")
    parser.add_argument("--base", default="http://127.0.0.1:8000", help="API base URL")
    args = parser.parse_args()
    attack(args)


if __name__ == "__main__":
    main()
