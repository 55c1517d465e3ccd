"""
A command-line utility for issuing an API token to a user.

The token is printed exactly once; only its SHA-256 digest is stored. Pass
the token to the API as `Authorization: Bearer <token>` or paste it into the
Streamlit sidebar.

Usage:
    python scripts/issue_token.py <user_id> [--name laptop]
"""

import argparse
import sys

from cardex.auth import issue_api_token
from cardex.database.connection import create_db_and_tables
from cardex.errors import CardexError


def main():
    """Main execution function for the script."""
    parser = argparse.ArgumentParser(description="Issue a Cardex API token.")
    parser.add_argument("user_id", help="The id of the user the token acts as.")
    parser.add_argument("--name", default="default", help="A label to recognise the token by.")
    args = parser.parse_args()

    create_db_and_tables()
    try:
        token = issue_api_token(args.user_id, name=args.name)
    except CardexError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)

    print(f"Issued token '{args.name}' for user {args.user_id}:")
    print(token)
    print("Store it safely; it cannot be shown again.")


if __name__ == "__main__":
    main()
