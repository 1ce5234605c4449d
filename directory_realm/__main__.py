"""
Directory Realm command line check.

Authenticates one user against the configured directory and prints the
resolved roles as JSON. Settings come from REALM_* environment variables.

Usage:
    python -m directory_realm jdoe
    REALM_CONNECTION_URL=ldap://dc01:389 directory-realm jdoe --password-stdin < secret.txt
"""

import argparse
import getpass
import json
import logging
import sys

from directory_realm.config import load_settings
from directory_realm.errors import ConfigurationError
from directory_realm.realm import DirectoryRealm


def main(argv=None):
    parser = argparse.ArgumentParser(description="Authenticate a user against the directory realm")
    parser.add_argument("username", help="Username to authenticate")
    parser.add_argument("--password-stdin", action="store_true", help="Read the password from stdin")
    args = parser.parse_args(argv)

    try:
        settings = load_settings()
        realm = DirectoryRealm(settings)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.password_stdin:
        password = sys.stdin.readline().rstrip("\n")
    else:
        password = getpass.getpass(f"Password for {args.username}: ")

    try:
        realm.start()
        principal = realm.authenticate(args.username, password)
    except KeyboardInterrupt:
        return 130
    finally:
        realm.stop()

    if principal is None:
        print(json.dumps({"username": args.username, "authenticated": False}))
        return 1

    print(json.dumps({"username": principal.username, "authenticated": True, "roles": list(principal.roles)}, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
