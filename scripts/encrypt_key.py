#!/usr/bin/env python3
"""Encrypt the fee payer private key for FEE_PAYER_PRIVATE_KEY.

Usage:
    python scripts/encrypt_key.py            # prompts for the key, new MASTER_KEY
    python scripts/encrypt_key.py --master-key KEY

Prints the encrypted key and the MASTER_KEY to put in .env.
"""

import argparse
import sys
from getpass import getpass

from eth_account import Account

from feerelay.crypto import encrypt_private_key


def main():
    parser = argparse.ArgumentParser(description="Encrypt the fee payer key")
    parser.add_argument("--master-key", type=str, help="Existing MASTER_KEY (default: generate one)")
    args = parser.parse_args()

    private_key = getpass("Fee payer private key: ").strip()
    try:
        address = Account.from_key(private_key).address
    except ValueError as e:
        print(f"Error: invalid private key ({e})")
        sys.exit(1)

    encrypted, master_key = encrypt_private_key(private_key, args.master_key)

    print(f"Fee payer address: {address}")
    print()
    print("Add to .env:")
    print(f"FEE_PAYER_PRIVATE_KEY={encrypted}")
    if not args.master_key:
        print(f"MASTER_KEY={master_key}")
        print()
        print("Keep MASTER_KEY out of version control; without it the key cannot be recovered.")


if __name__ == "__main__":
    main()
