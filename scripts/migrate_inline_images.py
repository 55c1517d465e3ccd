"""
A command-line utility for moving card images that are still stored inline
(as data URLs in the card document) into blob storage.

Each migrated card keeps its id and metadata; only `image_url` changes. The
script is idempotent and can be re-run until no inline images remain.
"""

import sys

from cardex.database.connection import create_db_and_tables
from cardex.logging_config import configure_logging
from cardex.services.card_workflows import card_workflows


def main():
    """Main execution function for the script."""
    configure_logging()
    create_db_and_tables()

    migrated, failed = card_workflows.migrate_inline_images()
    print(f"Migrated {migrated} inline image(s) to blob storage.")
    if failed:
        print(f"{failed} card(s) could not be migrated; see the log for details.", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
