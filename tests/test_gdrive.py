# tests/test_gdrive.py
from datetime import datetime, timezone
import time
from unittest.mock import ANY, MagicMock, call, patch
from urllib.parse import parse_qs, urlparse

import pytest
import pytest_asyncio
from google.auth.exceptions import RefreshError
from googleapiclient.errors import HttpError

from yunp_storage.exceptions import (
    AuthError,
    NotFoundError,
    QuotaExceededError,
    StorageTimeoutError,
    TransientError,
)
from yunp_storage.gdrive import FOLDER_MIME, SCOPES, TOKEN_URI, GoogleDriveProvider
from yunp_storage.storage.dto import ByteRange, ShareOptions, UploadOptions


def http_error(status, content=b"{}"):
    resp = MagicMock(status=status, reason="error")
    return HttpError(resp, content)


@pytest.fixture
def gdrive_settings(settings_factory):
    return settings_factory(
        GOOGLE_CLIENT_ID="google-id",
        GOOGLE_CLIENT_SECRET="google-secret",
        GOOGLE_REDIRECT_URI="http://testserver/callback/google-drive",
        GDRIVE_RESUMABLE_THRESHOLD=1024,
        GDRIVE_CHUNK_SIZE=256,
    )


@pytest.fixture
def service():
    return MagicMock()


@pytest_asyncio.fixture
async def provider(gdrive_settings, service):
    """Fixture that creates an authenticated provider with a mocked Drive service."""
    with patch("yunp_storage.gdrive.build", return_value=service) as mock_build:
        provider = GoogleDriveProvider(gdrive_settings, "alice")
        await provider.authenticate("access-token", "refresh-token")
        mock_build.assert_called_once_with("drive", "v3", credentials=ANY, cache_discovery=False)
    return provider


def test_get_auth_url_requests_offline_access(gdrive_settings):
    provider = GoogleDriveProvider(gdrive_settings)

    url = provider.get_auth_url(state="csrf-state")

    query = parse_qs(urlparse(url).query)
    assert url.startswith("https://accounts.google.com/o/oauth2/auth")
    assert query["client_id"] == ["google-id"]
    assert query["access_type"] == ["offline"]
    assert query["prompt"] == ["consent"]
    assert query["state"] == ["csrf-state"]
    assert query["redirect_uri"] == ["http://testserver/callback/google-drive"]


@pytest.mark.asyncio
async def test_handle_callback_exchanges_code(gdrive_settings):
    provider = GoogleDriveProvider(gdrive_settings)
    flow = MagicMock()
    flow.credentials.token = "new-access"
    flow.credentials.refresh_token = "new-refresh"
    flow.credentials.expiry = datetime(2030, 1, 1, 12, 0)

    with patch.object(GoogleDriveProvider, "_flow", return_value=flow):
        tokens = await provider.handle_callback("auth-code", "csrf-state")

    flow.fetch_token.assert_called_once_with(code="auth-code")
    assert tokens.access_token == "new-access"
    assert tokens.refresh_token == "new-refresh"
    assert tokens.expires_at == datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_authenticate_without_token_fails(gdrive_settings):
    with pytest.raises(AuthError) as exc_info:
        await GoogleDriveProvider(gdrive_settings).authenticate(None)
    assert exc_info.value.reason == "missing_access_token"


@pytest.mark.asyncio
async def test_calls_before_authenticate_fail(gdrive_settings):
    with pytest.raises(AuthError) as exc_info:
        await GoogleDriveProvider(gdrive_settings).get_file("abc")
    assert exc_info.value.reason == "not_authenticated"


@pytest.mark.asyncio
async def test_adapter_credentials_carry_the_access_token_only(provider):
    assert provider.credentials.token == "access-token"
    assert provider.credentials.refresh_token is None
    assert provider.refresh_token == "refresh-token"


@pytest.mark.asyncio
@patch("yunp_storage.gdrive.build")
@patch("yunp_storage.gdrive.Credentials")
async def test_refresh_uses_a_separate_refresher(MockCredentials, mock_build, provider):
    refresher = MagicMock(token="fresh", refresh_token=None, expiry=datetime(2030, 1, 1))
    MockCredentials.side_effect = [refresher, MagicMock()]

    tokens = await provider.refresh_access_token()

    assert MockCredentials.call_args_list[0] == call(
        token=None,
        refresh_token="refresh-token",
        token_uri=TOKEN_URI,
        client_id="google-id",
        client_secret="google-secret",
        scopes=SCOPES,
    )
    refresher.refresh.assert_called_once()
    assert MockCredentials.call_args_list[1] == call(token="fresh")
    mock_build.assert_called_once()
    assert provider.access_token == "fresh"
    assert provider.refresh_token == "refresh-token"
    assert tokens.access_token == "fresh"
    # The refresh token did not rotate.
    assert tokens.refresh_token is None
    assert tokens.expires_at.tzinfo is not None


@pytest.mark.asyncio
@patch("yunp_storage.gdrive.build")
@patch("yunp_storage.gdrive.Credentials")
async def test_rotated_refresh_token_is_reported(MockCredentials, mock_build, provider):
    refresher = MagicMock(token="fresh", refresh_token="refresh-2", expiry=None)
    MockCredentials.side_effect = [refresher, MagicMock()]

    tokens = await provider.refresh_access_token()

    assert tokens.refresh_token == "refresh-2"
    assert provider.refresh_token == "refresh-2"


@pytest.mark.asyncio
@patch("yunp_storage.gdrive.Credentials")
async def test_revoked_grant_is_auth_error(MockCredentials, provider):
    MockCredentials.return_value.refresh.side_effect = RefreshError("invalid_grant: Token has been revoked.")

    with pytest.raises(AuthError) as exc_info:
        await provider.refresh_access_token()
    assert exc_info.value.reason == "invalid_grant"
    assert provider.access_token == "access-token"


@pytest.mark.asyncio
@patch("yunp_storage.gdrive.MediaIoBaseUpload")
async def test_upload_small_file(MockMedia, provider, service):
    service.files.return_value.create.return_value.execute.return_value = {
        "id": "file-1", "name": "a.txt", "size": "3", "mimeType": "text/plain",
        "webViewLink": "https://drive.google.com/file/d/file-1/view",
    }

    item = await provider.upload_file(b"abc", UploadOptions(file_name="a.txt", mime_type="text/plain"))

    MockMedia.assert_called_once_with(ANY, mimetype="text/plain", chunksize=256, resumable=False)
    service.files.return_value.create.assert_called_once_with(
        body={"name": "a.txt", "parents": ["root"]}, media_body=MockMedia.return_value, fields=ANY
    )
    assert item.id == "file-1"
    assert item.size == 3
    assert item.url == "https://drive.google.com/file/d/file-1/view"


@pytest.mark.asyncio
@patch("yunp_storage.gdrive.MediaIoBaseUpload")
async def test_upload_large_file_is_resumable(MockMedia, provider, service):
    request = service.files.return_value.create.return_value
    status = MagicMock()
    status.progress.return_value = 0.5
    request.next_chunk.side_effect = [(status, None), (None, {"id": "file-2", "name": "big.bin"})]

    item = await provider.upload_file(b"x" * 2048, UploadOptions(file_name="big.bin", folder_id="folder-9"))

    MockMedia.assert_called_once_with(ANY, mimetype="application/octet-stream", chunksize=256, resumable=True)
    assert request.next_chunk.call_count == 2
    request.execute.assert_not_called()
    assert item.id == "file-2"


@pytest.mark.asyncio
@patch("yunp_storage.gdrive.MediaIoBaseUpload")
async def test_resumable_deadline_applies_per_chunk(MockMedia, provider, service):
    provider.timeout = 0.3
    request = service.files.return_value.create.return_value
    responses = iter([(None, None), (None, None), (None, {"id": "file-3", "name": "slow.bin"})])

    def slow_chunk():
        time.sleep(0.15)
        return next(responses)

    request.next_chunk.side_effect = slow_chunk

    item = await provider.upload_file(b"x" * 2048, UploadOptions(file_name="slow.bin"))

    assert request.next_chunk.call_count == 3
    assert item.id == "file-3"


@pytest.mark.asyncio
@patch("yunp_storage.gdrive.MediaIoBaseUpload")
async def test_stalled_chunk_times_out(MockMedia, provider, service):
    provider.timeout = 0.1
    request = service.files.return_value.create.return_value
    request.next_chunk.side_effect = lambda: time.sleep(0.5)

    with pytest.raises(StorageTimeoutError):
        await provider.upload_file(b"x" * 2048, UploadOptions(file_name="stalled.bin"))


@pytest.mark.asyncio
async def test_socket_timeout_is_a_storage_timeout(provider):
    assert isinstance(provider._translate_error(TimeoutError("timed out")), StorageTimeoutError)
    assert isinstance(provider._translate_error(ConnectionResetError("reset")), TransientError)


@pytest.mark.asyncio
@patch("yunp_storage.gdrive.MediaIoBaseUpload")
async def test_upload_overwrite_updates_existing_file(MockMedia, provider, service):
    files = service.files.return_value
    files.list.return_value.execute.return_value = {"files": [{"id": "existing"}]}
    files.update.return_value.execute.return_value = {"id": "existing", "name": "a.txt"}

    item = await provider.upload_file(b"abc", UploadOptions(file_name="a.txt", overwrite=True))

    files.update.assert_called_once_with(fileId="existing", media_body=MockMedia.return_value, fields=ANY)
    files.create.assert_not_called()
    assert item.id == "existing"


@pytest.mark.asyncio
async def test_ranged_download_sends_range_header(provider, service):
    request = service.files.return_value.get_media.return_value
    request.headers = {}
    request.execute.return_value = b"2345"

    data = await provider.download_file("file-1", ByteRange(start=2, end=5))

    assert data == b"2345"
    assert request.headers["Range"] == "bytes=2-5"


@pytest.mark.asyncio
async def test_full_download_uses_media_downloader(provider):
    def fake_downloader(buffer, request, chunksize):
        downloader = MagicMock()

        def next_chunk():
            buffer.write(b"content")
            return None, True

        downloader.next_chunk.side_effect = next_chunk
        return downloader

    with patch("yunp_storage.gdrive.MediaIoBaseDownload", side_effect=fake_downloader):
        assert await provider.download_file("file-1") == b"content"


@pytest.mark.asyncio
async def test_list_files_splits_folders_and_files(provider, service):
    service.files.return_value.list.return_value.execute.side_effect = [
        {"files": [{"id": "f1", "name": "docs", "mimeType": FOLDER_MIME, "parents": ["root"]}],
         "nextPageToken": "next"},
        {"files": [{"id": "a", "name": "a.txt", "mimeType": "text/plain", "size": "1"}]},
    ]

    result = await provider.list_files()

    assert result.total == 2
    assert [f.id for f in result.folders] == ["f1"]
    assert result.folders[0].parent_id == "root"
    assert [f.id for f in result.files] == ["a"]


@pytest.mark.asyncio
async def test_move_replaces_parents(provider, service):
    files = service.files.return_value
    files.get.return_value.execute.return_value = {"parents": ["old-1", "old-2"]}
    files.update.return_value.execute.return_value = {"id": "file-1", "name": "a.txt"}

    await provider.move_file("file-1", "new-parent")

    files.update.assert_called_once_with(
        fileId="file-1", addParents="new-parent", removeParents="old-1,old-2", fields=ANY
    )


@pytest.mark.asyncio
async def test_get_file_rejects_folders(provider, service):
    service.files.return_value.get.return_value.execute.return_value = {
        "id": "f1", "name": "docs", "mimeType": FOLDER_MIME,
    }

    with pytest.raises(NotFoundError):
        await provider.get_file("f1")
    assert (await provider.get_folder("f1")).name == "docs"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,content,error_cls",
    [
        (404, b'{"error": {"message": "File not found"}}', NotFoundError),
        (401, b"{}", AuthError),
        (403, b'{"error": {"errors": [{"reason": "storageQuotaExceeded"}]}}', QuotaExceededError),
        (403, b'{"error": {"errors": [{"reason": "userRateLimitExceeded"}]}}', TransientError),
        (503, b"{}", TransientError),
    ],
)
async def test_http_errors_are_translated(provider, service, status, content, error_cls):
    service.files.return_value.delete.return_value.execute.side_effect = http_error(status, content)

    with pytest.raises(error_cls) as exc_info:
        await provider.delete_file("file-1")
    assert isinstance(exc_info.value.cause, HttpError)


@pytest.mark.asyncio
async def test_share_link_uses_anyone_permission(provider, service):
    service.permissions.return_value.create.return_value.execute.return_value = {"id": "perm-1"}
    service.files.return_value.get.return_value.execute.return_value = {"webViewLink": "https://drive/view"}

    link = await provider.create_share_link("file-1", ShareOptions(allow_edit=True))

    service.permissions.return_value.create.assert_called_once_with(
        fileId="file-1", body={"role": "writer", "type": "anyone"}, fields="id"
    )
    assert link.url == "https://drive/view"
    assert link.share_id == "perm-1"

    await provider.revoke_share_link("file-1", link.share_id)
    service.permissions.return_value.delete.assert_called_once_with(fileId="file-1", permissionId="perm-1")


@pytest.mark.asyncio
async def test_search_builds_drive_query(provider, service):
    service.files.return_value.list.return_value.execute.return_value = {"files": []}

    await provider.search_files("O'Brien")

    query = service.files.return_value.list.call_args.kwargs["q"]
    assert "name contains 'O\\'Brien'" in query
    assert "trashed=false" in query


@pytest.mark.asyncio
async def test_quota_limited_and_unlimited(provider, service):
    about = service.about.return_value.get.return_value
    about.execute.return_value = {"storageQuota": {"limit": "1000", "usage": "250"}}
    quota = await provider.get_quota()
    assert (quota.total, quota.used, quota.available) == (1000, 250, 750)

    about.execute.return_value = {"storageQuota": {"usage": "250"}}
    assert (await provider.get_quota()).is_unlimited


@pytest.mark.asyncio
async def test_thumbnail_is_fetched_with_bearer_token(provider, service):
    service.files.return_value.get.return_value.execute.return_value = {
        "thumbnailLink": "https://lh3.googleusercontent.com/thumb=s220"
    }
    with patch("yunp_storage.gdrive.requests.get") as mock_get:
        mock_get.return_value = MagicMock(ok=True, content=b"png")
        assert await provider.get_thumbnail("file-1", size=64) == b"png"

    mock_get.assert_called_once_with(
        "https://lh3.googleusercontent.com/thumb=s64",
        headers={"Authorization": "Bearer access-token"},
        timeout=ANY,
    )


@pytest.mark.asyncio
async def test_preview_failure_returns_none(provider, service):
    service.files.return_value.get.return_value.execute.side_effect = http_error(404)

    assert await provider.get_preview_url("missing") is None
    assert await provider.get_thumbnail("missing") is None
