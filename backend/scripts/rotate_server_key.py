"""
SERVER_KEY rotation script

Re-encrypts every encrypted brand setting from the previous server secret
to the new one. Run it with both secrets BEFORE deploying the new
SERVER_KEY to the API; values it cannot decrypt are left untouched and
listed so they can be re-entered by hand.

Usage:
    # Report what would change (default)
    python -m scripts.rotate_server_key

    # Write the re-encrypted values
    python -m scripts.rotate_server_key --apply

Environment variables:
    DATABASE_URL: Database connection string
    OLD_SERVER_KEY: Secret the stored values are currently encrypted with
    SERVER_KEY: New secret to encrypt with
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

# Add backend directory to path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from docchat.database.session import get_db_session_sync
from docchat.services.settings_service import SettingsRepository
from docchat.utils.encryption import ConfigurationError, SecretEncryptor

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_encryptors() -> tuple[SecretEncryptor, SecretEncryptor]:
    """
    Build (old, new) encryptors from the environment.

    Raises:
        ConfigurationError: If either secret is missing or the placeholder
        ValueError: If both secrets are identical
    """
    old_key = os.getenv("OLD_SERVER_KEY")
    new_key = os.getenv("SERVER_KEY")
    if old_key and old_key == new_key:
        raise ValueError("OLD_SERVER_KEY and SERVER_KEY are identical; nothing to rotate")
    return SecretEncryptor(old_key), SecretEncryptor(new_key)


async def rotate(apply: bool) -> int:
    old_encryptor, new_encryptor = build_encryptors()

    session = next(get_db_session_sync())
    try:
        report = await SettingsRepository(session).reencrypt_all(
            old_encryptor,
            new_encryptor,
            dry_run=not apply,
        )
    finally:
        session.close()

    mode = "APPLIED" if apply else "DRY RUN"
    logger.info(
        f"[{mode}] {report.reencrypted}/{report.total} secrets re-encrypted, "
        f"{report.migrated} plaintext secrets encrypted, {len(report.failed)} failed"
    )
    for brand_code, setting_key in report.failed:
        logger.warning(f"Needs manual re-entry: brand={brand_code} key={setting_key}")

    return 1 if report.failed else 0


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Re-encrypt brand settings from OLD_SERVER_KEY to SERVER_KEY"
    )
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Write changes (default is a dry run)",
    )
    args = parser.parse_args()

    try:
        return asyncio.run(rotate(args.apply))
    except (ConfigurationError, ValueError) as e:
        logger.error(f"Key rotation aborted: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
