# main.py
import argparse
import asyncio
import logging
from typing import List, Optional

from .config import Settings, get_settings
from .storage.credentials import CredentialStore, InMemoryCredentialStore, JsonFileCredentialStore
from .storage.manager import StorageManager

NOISY_LOGGERS = ("dropbox", "urllib3", "googleapiclient", "botocore", "boto3", "azure")


def setup_logging(settings: Optional[Settings] = None):
    """Configures logging to file and console explicitly."""
    settings = settings or get_settings()
    log_level_name = settings.LOG_LEVEL.upper()

    # Get the root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level_name)

    # Clear any existing handlers to prevent duplicate logs on re-runs or implicit configs
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Add StreamHandler (for console output)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    if settings.LOG_FILE:
        try:
            file_handler = logging.FileHandler(settings.LOG_FILE)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except IOError as e:
            # Log to console if file logging fails (e.g., permissions)
            root_logger.error(f"Failed to set up file logging to {settings.LOG_FILE}: {e}")

    # Reducing "noise" from third-party libraries
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def build_credential_store(settings: Settings) -> CredentialStore:
    """JSON file store when CREDENTIALS_FILE is set, in-memory otherwise."""
    if settings.CREDENTIALS_FILE:
        logging.info(f"Using credential file {settings.CREDENTIALS_FILE}")
        return JsonFileCredentialStore(settings.CREDENTIALS_FILE)
    logging.info("Using in-memory credential store; registrations are lost on exit.")
    return InMemoryCredentialStore()


def create_manager(settings: Optional[Settings] = None) -> StorageManager:
    """
    Builds the storage manager from deployment settings. The caller owns the
    instance and closes it (or uses it as an async context manager).
    """
    settings = settings or get_settings()
    manager = StorageManager(settings, build_credential_store(settings))
    configured = [s.kind.value for s in manager.list_available() if s.configured]
    logging.info(f"Storage manager ready. Configured providers: {', '.join(configured)}")
    return manager


def _print_providers(manager: StorageManager) -> None:
    for status in manager.list_available():
        state = "configured" if status.configured else "not configured"
        print(f"{status.kind.value:<14} {status.display_name:<20} {state}")


async def _print_registrations(manager: StorageManager, user_id: str) -> None:
    async with manager:
        registrations = await manager.list_registrations(user_id)
    if not registrations:
        print(f"No active registrations for user {user_id}.")
        return
    for r in registrations:
        marker = "*" if r.is_default else " "
        quota = "unlimited" if r.quota_total < 0 else f"{r.quota_used}/{r.quota_total}"
        print(f"{marker} {r.id}  {r.provider_kind.value:<14} {r.display_name:<20} quota {quota}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Inspect the storage backends and provider registrations of this deployment."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("providers", help="List every provider kind and whether it is configured.")
    registrations = subparsers.add_parser("registrations", help="List a user's provider registrations.")
    registrations.add_argument("--user", required=True, help="The user id.")
    args = parser.parse_args(argv)

    setup_logging()
    manager = create_manager()

    if args.command == "providers":
        _print_providers(manager)
        return 0

    try:
        asyncio.run(_print_registrations(manager, args.user))
    except Exception as e:
        logging.critical(f"Could not read registrations of user {args.user}: {e}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
