# tests/conftest.py
import pytest

from yunp_storage.config import Settings, get_settings


def make_settings(tmp_path, **overrides) -> Settings:
    """
    Builds real settings bound to a temporary directory. The .env file of the
    working directory is never read.
    """
    values = {
        "LOCAL_STORAGE_ROOT": tmp_path / "uploads",
        "LOG_LEVEL": "DEBUG",
        "REQUEST_TIMEOUT_SECONDS": 5.0,
        "PUBLIC_BASE_URL": "http://testserver",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings_factory(tmp_path):
    """Returns a builder of settings bound to this test's temporary directory."""
    return lambda **overrides: make_settings(tmp_path, **overrides)


@pytest.fixture
def settings(tmp_path):
    """Deployment settings with only local storage configured."""
    return make_settings(tmp_path)


@pytest.fixture
def full_settings(tmp_path):
    """Deployment settings with every provider configured."""
    return make_settings(
        tmp_path,
        AWS_ACCESS_KEY_ID="AKIATEST",
        AWS_SECRET_ACCESS_KEY="secret",
        AWS_S3_BUCKET="test-bucket",
        AZURE_STORAGE_CONNECTION_STRING=(
            "DefaultEndpointsProtocol=https;AccountName=testacct;"
            "AccountKey=dGVzdGtleQ==;EndpointSuffix=core.windows.net"
        ),
        AZURE_STORAGE_CONTAINER="test-container",
        GOOGLE_CLIENT_ID="google-id",
        GOOGLE_CLIENT_SECRET="google-secret",
        GOOGLE_REDIRECT_URI="http://testserver/api/storage/callback/google-drive",
        ONEDRIVE_CLIENT_ID="onedrive-id",
        ONEDRIVE_CLIENT_SECRET="onedrive-secret",
        ONEDRIVE_REDIRECT_URI="http://testserver/api/storage/callback/onedrive",
        DROPBOX_APP_KEY="dropbox-key",
        DROPBOX_APP_SECRET="dropbox-secret",
        DROPBOX_REDIRECT_URI="http://testserver/api/storage/callback/dropbox",
    )


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """
    get_settings is cached; a value cached by one test must not leak into
    the next one.
    """
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
