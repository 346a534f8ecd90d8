#!/usr/bin/env python3
"""Print an Argon2id hash for provisioning a staff or citizen account.

Usage:
    # Prompt for the password (not echoed):
    python scripts/hash_password.py

    # Or pass it explicitly / through the environment:
    python scripts/hash_password.py --password 'S3cure-Passw0rd'
    HASH_PASSWORD='S3cure-Passw0rd' python scripts/hash_password.py

The printed value goes into usuarios.senha_hash or cidadaos.senha_hash.
"""
from __future__ import annotations

import argparse
import getpass
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def hash_password(password: str) -> str:
    from municipio_auth.service.passwords import Argon2PasswordVerifier

    return Argon2PasswordVerifier().hash(password)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Hash a password with Argon2id",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("HASH_PASSWORD"),
        help="Password to hash (or set HASH_PASSWORD; prompts when omitted)",
    )
    parser.add_argument(
        "--verify",
        metavar="HASH",
        help="Check the password against an existing hash instead of hashing it",
    )
    args = parser.parse_args()

    password = args.password
    if not password:
        password = getpass.getpass("Password: ")
    if not password:
        print("Error: empty password", file=sys.stderr)
        sys.exit(1)

    if args.verify:
        from municipio_auth.service.passwords import Argon2PasswordVerifier

        ok = Argon2PasswordVerifier().verify(password, args.verify)
        print("match" if ok else "mismatch")
        sys.exit(0 if ok else 2)

    print(hash_password(password))


if __name__ == "__main__":
    main()
