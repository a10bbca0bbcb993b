# tests/test_dbox.py
from datetime import datetime
from unittest.mock import ANY, MagicMock, patch
from urllib.parse import parse_qs, urlparse

import pytest
import pytest_asyncio
import requests
from dropbox.auth import AuthError as DropboxAuthErrorTag
from dropbox.exceptions import ApiError, AuthError as DropboxAuthError, RateLimitError
from dropbox.files import (
    DeleteError,
    FileMetadata,
    FolderMetadata,
    ListFolderResult,
    LookupError as DropboxLookupError,
    ThumbnailSize,
    WriteMode,
)
from dropbox.sharing import CreateSharedLinkWithSettingsError

from yunp_storage.dbox import TOKEN_URL, DropboxProvider
from yunp_storage.exceptions import AuthError, NotFoundError, StorageTimeoutError, TransientError
from yunp_storage.storage.dto import ByteRange, ShareOptions, UploadOptions

MODIFIED = datetime(2024, 5, 1, 10, 30)


def file_metadata(path, size=10):
    return FileMetadata(
        name=path.rsplit("/", 1)[-1],
        id="id:" + path.strip("/").replace("/", "-"),
        client_modified=MODIFIED,
        server_modified=MODIFIED,
        rev="0123456789abcdef",
        size=size,
        path_lower=path.lower(),
        path_display=path,
    )


def folder_metadata(path):
    return FolderMetadata(
        name=path.rsplit("/", 1)[-1],
        id="id:" + path.strip("/").replace("/", "-"),
        path_lower=path.lower(),
        path_display=path,
    )


@pytest.fixture
def dropbox_settings(settings_factory):
    return settings_factory(
        DROPBOX_APP_KEY="dropbox-key",
        DROPBOX_APP_SECRET="dropbox-secret",
        DROPBOX_REDIRECT_URI="http://testserver/callback/dropbox",
        DROPBOX_UPLOAD_THRESHOLD=1024,
        DROPBOX_UPLOAD_CHUNK_SIZE=256,
    )


@pytest_asyncio.fixture
async def provider(dropbox_settings):
    """Fixture that creates an authenticated provider with a mocked SDK client."""
    with patch("yunp_storage.dbox.dropbox.Dropbox") as MockDropbox:
        provider = DropboxProvider(dropbox_settings, "alice")
        await provider.authenticate("access-token", "refresh-token")
        MockDropbox.assert_called_once_with(oauth2_access_token="access-token", timeout=ANY)
    return provider


def test_get_auth_url_requests_offline_token(dropbox_settings):
    url = DropboxProvider(dropbox_settings).get_auth_url("csrf")

    query = parse_qs(urlparse(url).query)
    assert query["client_id"] == ["dropbox-key"]
    assert query["token_access_type"] == ["offline"]
    assert query["state"] == ["csrf"]


@pytest.mark.asyncio
async def test_authenticate_without_token_fails(dropbox_settings):
    with pytest.raises(AuthError):
        await DropboxProvider(dropbox_settings).authenticate(None)


@pytest.mark.asyncio
@patch("yunp_storage.dbox.requests.post")
async def test_refresh_uses_token_endpoint_and_rebinds(mock_post, provider):
    mock_post.return_value = MagicMock(
        json=MagicMock(return_value={"access_token": "fresh", "expires_in": 14400})
    )

    with patch("yunp_storage.dbox.dropbox.Dropbox") as MockDropbox:
        tokens = await provider.refresh_access_token()

    mock_post.assert_called_once_with(TOKEN_URL, data=ANY, timeout=ANY)
    assert mock_post.call_args.kwargs["data"]["refresh_token"] == "refresh-token"
    MockDropbox.assert_called_once_with(oauth2_access_token="fresh", timeout=ANY)
    assert tokens.access_token == "fresh"
    assert provider.refresh_token == "refresh-token"


@pytest.mark.asyncio
async def test_small_upload_autorenames(provider):
    provider.dbx.files_upload.return_value = file_metadata("/docs/a.txt", size=3)

    item = await provider.upload_file(b"abc", UploadOptions(file_name="a.txt", folder_id="/docs"))

    provider.dbx.files_upload.assert_called_once_with(
        b"abc", "/docs/a.txt", mode=WriteMode("add"), autorename=True
    )
    assert item.id == "/docs/a.txt"
    assert item.mime_type == "text/plain"
    provider.dbx.files_upload_session_start.assert_not_called()


@pytest.mark.asyncio
async def test_large_upload_uses_session(provider):
    dbx = provider.dbx
    dbx.files_upload_session_start.return_value = MagicMock(session_id="session-1")
    dbx.files_upload_session_finish.return_value = file_metadata("/big.bin", size=1000)

    item = await provider.upload_file(b"x" * 1000, UploadOptions(file_name="big.bin", overwrite=True))

    offsets = [c.args[1].offset for c in dbx.files_upload_session_append_v2.call_args_list]
    assert offsets == [0, 256, 512, 768]
    _, cursor, commit = dbx.files_upload_session_finish.call_args.args
    assert cursor.offset == 1000
    assert commit.path == "/big.bin"
    assert commit.mode == WriteMode("overwrite")
    assert item.size == 1000


@pytest.mark.asyncio
async def test_failed_append_never_finishes_the_session(provider):
    dbx = provider.dbx
    dbx.files_upload_session_start.return_value = MagicMock(session_id="session-1")
    dbx.files_upload_session_append_v2.side_effect = [None, RateLimitError("req-1")]

    with pytest.raises(TransientError):
        await provider.upload_file(b"x" * 1000, UploadOptions(file_name="big.bin"))

    dbx.files_upload_session_finish.assert_not_called()


@pytest.mark.asyncio
async def test_ranged_download_is_sliced_locally(provider):
    response = MagicMock(content=b"0123456789")
    provider.dbx.files_download.return_value = (file_metadata("/d.bin"), response)

    assert await provider.download_file("/d.bin", ByteRange(start=2, end=4)) == b"234"
    provider.dbx.files_download.assert_called_once_with("/d.bin")
    response.close.assert_called_once()


@pytest.mark.asyncio
async def test_list_files_with_pagination(provider):
    provider.dbx.files_list_folder.return_value = ListFolderResult(
        entries=[file_metadata("/b.pdf"), folder_metadata("/Docs")], has_more=True, cursor="cursor123"
    )
    provider.dbx.files_list_folder_continue.return_value = ListFolderResult(
        entries=[file_metadata("/a.pdf")], has_more=False, cursor="cursor456"
    )

    result = await provider.list_files()

    provider.dbx.files_list_folder.assert_called_once_with("")
    provider.dbx.files_list_folder_continue.assert_called_once_with("cursor123")
    assert result.total == 3
    assert [f.id for f in result.folders] == ["/Docs"]
    assert result.folders[0].parent_id == ""
    assert [f.name for f in result.files] == ["a.pdf", "b.pdf"]


@pytest.mark.asyncio
async def test_delete_missing_path_is_not_found(provider):
    error = DeleteError.path_lookup(DropboxLookupError.not_found)
    provider.dbx.files_delete_v2.side_effect = ApiError("req-1", error, None, None)

    with pytest.raises(NotFoundError) as exc_info:
        await provider.delete_file("/missing.txt")
    assert isinstance(exc_info.value.cause, ApiError)


@pytest.mark.asyncio
async def test_expired_token_is_auth_error(provider):
    provider.dbx.files_get_metadata.side_effect = DropboxAuthError(
        "req-1", DropboxAuthErrorTag.expired_access_token
    )

    with pytest.raises(AuthError) as exc_info:
        await provider.get_file("/a.txt")
    assert exc_info.value.reason == "expired_access_token"


@pytest.mark.asyncio
async def test_connect_timeout_is_a_storage_timeout(provider):
    provider.dbx.files_get_metadata.side_effect = requests.exceptions.ConnectTimeout("connect timed out")

    with pytest.raises(StorageTimeoutError):
        await provider.get_file("/a.txt")

    unreachable = provider._translate_error(requests.exceptions.ConnectionError("refused"))
    assert isinstance(unreachable, TransientError)


@pytest.mark.asyncio
async def test_move_and_copy_autorename(provider):
    provider.dbx.files_move_v2.return_value = MagicMock(metadata=file_metadata("/dest/a.txt"))
    provider.dbx.files_copy_v2.return_value = MagicMock(metadata=file_metadata("/dest/a (1).txt"))

    moved = await provider.move_file("/a.txt", "/dest")
    copied = await provider.copy_file("/dest/a.txt", "/dest")

    provider.dbx.files_move_v2.assert_called_once_with("/a.txt", "/dest/a.txt", autorename=True)
    assert moved.id == "/dest/a.txt"
    assert copied.name == "a (1).txt"


@pytest.mark.asyncio
async def test_share_link_reuses_existing_link(provider):
    dbx = provider.dbx
    dbx.sharing_create_shared_link_with_settings.side_effect = ApiError(
        "req-1", CreateSharedLinkWithSettingsError.shared_link_already_exists(None), None, None
    )
    existing = MagicMock(url="https://www.dropbox.com/s/abc/a.txt", expires=None)
    dbx.sharing_list_shared_links.return_value = MagicMock(links=[existing])

    link = await provider.create_share_link("/a.txt", ShareOptions(allow_edit=True))

    dbx.sharing_list_shared_links.assert_called_once_with(path="/a.txt", direct_only=True)
    assert link.url == link.share_id == "https://www.dropbox.com/s/abc/a.txt"

    await provider.revoke_share_link("/a.txt", link.share_id)
    dbx.sharing_revoke_shared_link.assert_called_once_with(link.share_id)


@pytest.mark.asyncio
async def test_quota_from_individual_allocation(provider):
    usage = MagicMock(used=250)
    usage.allocation.is_individual.return_value = True
    usage.allocation.get_individual.return_value.allocated = 1000
    provider.dbx.users_get_space_usage.return_value = usage

    quota = await provider.get_quota()

    assert (quota.total, quota.used, quota.available) == (1000, 250, 750)


@pytest.mark.asyncio
async def test_thumbnail_picks_closest_size(provider):
    response = MagicMock(content=b"png")
    provider.dbx.files_get_thumbnail_v2.return_value = (MagicMock(), response)

    assert await provider.get_thumbnail("/pic.jpg", size=64) == b"png"
    assert provider.dbx.files_get_thumbnail_v2.call_args.kwargs["size"] == ThumbnailSize.w64h64


@pytest.mark.asyncio
async def test_preview_url_is_temporary_link(provider):
    provider.dbx.files_get_temporary_link.return_value = MagicMock(link="https://dl.dropboxusercontent.com/x")

    assert await provider.get_preview_url("/a.txt") == "https://dl.dropboxusercontent.com/x"

    provider.dbx.files_get_temporary_link.side_effect = ApiError(
        "req-2", DeleteError.path_lookup(DropboxLookupError.not_found), None, None
    )
    assert await provider.get_preview_url("/missing.txt") is None
