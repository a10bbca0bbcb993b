# tests/test_main.py
import asyncio
import logging
from unittest.mock import patch

from yunp_storage import main as main_module
from yunp_storage.main import build_credential_store, create_manager, main, setup_logging
from yunp_storage.storage.credentials import InMemoryCredentialStore, JsonFileCredentialStore
from yunp_storage.storage.dto import ProviderKind, ProviderRegistration


def test_setup_logging_adds_file_handler_and_quiets_sdks(tmp_path, settings_factory):
    settings = settings_factory(LOG_FILE=tmp_path / "app.log", LOG_LEVEL="info")
    try:
        setup_logging(settings)
        root = logging.getLogger()
        assert root.level == logging.INFO
        assert any(isinstance(h, logging.FileHandler) for h in root.handlers)
        assert logging.getLogger("botocore").level == logging.WARNING
        assert logging.getLogger("dropbox").level == logging.WARNING
    finally:
        for handler in list(logging.getLogger().handlers):
            if isinstance(handler, logging.FileHandler):
                handler.close()
                logging.getLogger().removeHandler(handler)


def test_setup_logging_file_failure_is_not_fatal(tmp_path, settings_factory):
    settings = settings_factory(LOG_FILE=tmp_path / "missing-dir" / "app.log")
    setup_logging(settings)
    assert not any(isinstance(h, logging.FileHandler) for h in logging.getLogger().handlers)


def test_build_credential_store_defaults_to_memory(settings):
    assert type(build_credential_store(settings)) is InMemoryCredentialStore


def test_build_credential_store_uses_json_file(tmp_path, settings_factory):
    settings = settings_factory(CREDENTIALS_FILE=tmp_path / "credentials.json")
    store = build_credential_store(settings)
    assert isinstance(store, JsonFileCredentialStore)
    assert store.path == tmp_path / "credentials.json"


def test_create_manager_only_local_configured(settings):
    manager = create_manager(settings)
    assert manager.is_configured(ProviderKind.LOCAL)
    assert not manager.is_configured(ProviderKind.S3)


def test_cli_providers_lists_every_kind(settings, capsys):
    with patch.object(main_module, "get_settings", return_value=settings), \
            patch.object(main_module, "setup_logging"):
        assert main(["providers"]) == 0

    out = capsys.readouterr().out
    for kind in ProviderKind:
        assert kind.value in out
    assert "Local Storage" in out


def test_cli_registrations_reads_json_store(tmp_path, settings_factory, capsys):
    path = tmp_path / "credentials.json"
    settings = settings_factory(CREDENTIALS_FILE=path)
    store = JsonFileCredentialStore(path)
    asyncio.run(store.save(ProviderRegistration(
        user_id="alice", provider_kind=ProviderKind.LOCAL, display_name="My disk", is_default=True,
        quota_total=100, quota_used=10, quota_available=90,
    )))

    with patch.object(main_module, "get_settings", return_value=settings), \
            patch.object(main_module, "setup_logging"):
        assert main(["registrations", "--user", "alice"]) == 0

    out = capsys.readouterr().out
    assert "My disk" in out
    assert "10/100" in out
    assert out.startswith("*")


def test_cli_registrations_store_failure_returns_error(settings):
    with patch.object(main_module, "get_settings", return_value=settings), \
            patch.object(main_module, "setup_logging"), \
            patch.object(main_module, "_print_registrations", side_effect=RuntimeError("store is down")):
        assert main(["registrations", "--user", "bob"]) == 1
