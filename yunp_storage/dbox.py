# dbox.py
import logging
import mimetypes
import posixpath
from datetime import timezone
from typing import List, Optional
import urllib.parse

import dropbox
from dropbox.exceptions import (
    ApiError,
    AuthError as DropboxAuthError,
    BadInputError,
    HttpError as DropboxHttpError,
    InternalServerError,
    RateLimitError,
)
from dropbox.files import (
    CommitInfo,
    FileMetadata as DropboxFileMetadata,
    FolderMetadata as DropboxFolderMetadata,
    SearchOptions as DropboxSearchOptions,
    ThumbnailFormat,
    ThumbnailSize,
    UploadSessionCursor,
    WriteMode,
)
from dropbox.sharing import RequestedVisibility, SharedLinkSettings
import requests

from .exceptions import (
    ConflictError,
    NotFoundError,
    PermanentError,
    QuotaExceededError,
    StorageError,
    TransientError,
)
from .storage.base import StorageProvider
from .storage.chunked import ChunkedUploader, ChunkProtocol
from .storage.dto import (
    ByteRange,
    ListResult,
    OAuthTokens,
    ProviderKind,
    Quota,
    SearchOptions,
    ShareLink,
    ShareOptions,
    StorageFolder,
    StorageItem,
    UploadOptions,
)

AUTHORIZE_URL = "https://www.dropbox.com/oauth2/authorize"
TOKEN_URL = "https://api.dropboxapi.com/oauth2/token"
THUMBNAIL_SIZES = [
    (32, ThumbnailSize.w32h32),
    (64, ThumbnailSize.w64h64),
    (128, ThumbnailSize.w128h128),
    (256, ThumbnailSize.w256h256),
    (480, ThumbnailSize.w480h320),
    (640, ThumbnailSize.w640h480),
    (960, ThumbnailSize.w960h640),
    (1024, ThumbnailSize.w1024h768),
]


def _join(folder: Optional[str], name: str) -> str:
    # Handle root folder case
    return f"{folder or ''}/{name}".replace("//", "/")


def _utc(value):
    # The SDK works with naive UTC datetimes.
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class DropboxUploadSession(ChunkProtocol):
    """
    Upload session glue. Appends must follow each other at exact offsets;
    the file appears only when the session is finished with its commit info.
    """

    def __init__(self, provider: "DropboxProvider", path: str, options: UploadOptions):
        self.provider = provider
        self.path = path
        self.options = options

    async def open(self) -> str:
        result = await self.provider._run(self.provider._client().files_upload_session_start, b"")
        return result.session_id

    async def append(self, session_id: str, index: int, offset: int, chunk: bytes) -> int:
        logging.info(f"Uploading chunk for {self.path} (offset: {offset})...")
        cursor = UploadSessionCursor(session_id=session_id, offset=offset)
        await self.provider._run(self.provider._client().files_upload_session_append_v2, chunk, cursor)
        return offset + len(chunk)

    async def commit(self, session_id: str, parts: List[int], total_size: int) -> StorageItem:
        cursor = UploadSessionCursor(session_id=session_id, offset=total_size)
        commit_info = CommitInfo(
            path=self.path,
            mode=self.provider._write_mode(self.options),
            autorename=not self.options.overwrite,
        )
        metadata = await self.provider._run(
            self.provider._client().files_upload_session_finish, b"", cursor, commit_info
        )
        logging.info(f"Chunked upload completed for {self.path}.")
        return self.provider._item(metadata)

    async def abort(self, session_id: Optional[str]) -> None:
        # Dropbox has no call to close a session; unfinished sessions expire
        # after a week and never show up in listings.
        logging.warning(f"Abandoned Dropbox upload session {session_id} for {self.path}")


class DropboxProvider(StorageProvider):
    """
    Client for interacting with the Dropbox API, implementing the StorageProvider interface.
    Ids are Dropbox paths (`path_display`); the root folder is "".
    """

    kind = ProviderKind.DROPBOX
    display_name = "Dropbox"
    requires_user_credentials = True

    def __init__(self, settings, user_id=None):
        super().__init__(settings, user_id)
        self.dbx: Optional[dropbox.Dropbox] = None

    @classmethod
    def is_configured(cls, settings) -> bool:
        return settings.dropbox_configured

    async def close(self) -> None:
        if self.dbx is not None:
            self.dbx.close()
            self.dbx = None

    # --- authentication ---

    def get_auth_url(self, state: Optional[str] = None) -> str:
        params = {
            "client_id": self.settings.DROPBOX_APP_KEY,
            "response_type": "code",
            "token_access_type": "offline",
        }
        if self.settings.DROPBOX_REDIRECT_URI:
            params["redirect_uri"] = self.settings.DROPBOX_REDIRECT_URI
        if state:
            params["state"] = state
        return f"{AUTHORIZE_URL}?{urllib.parse.urlencode(params)}"

    def _token_request(self, params: dict) -> OAuthTokens:
        payload = {
            "client_id": self.settings.DROPBOX_APP_KEY,
            "client_secret": self.settings.DROPBOX_APP_SECRET,
            **params,
        }
        response = requests.post(TOKEN_URL, data=payload, timeout=self.timeout)
        response.raise_for_status()  # Raise an exception for bad status codes
        token_data = response.json()
        return OAuthTokens(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token"),
            expires_in=token_data.get("expires_in"),
        )

    async def handle_callback(self, code: str, state: Optional[str] = None) -> OAuthTokens:
        logging.info("Exchanging Dropbox authorization code for tokens")
        params = {"grant_type": "authorization_code", "code": code}
        if self.settings.DROPBOX_REDIRECT_URI:
            params["redirect_uri"] = self.settings.DROPBOX_REDIRECT_URI
        return await self._run(self._token_request, params)

    async def authenticate(self, access_token: Optional[str], refresh_token: Optional[str] = None) -> None:
        if not access_token:
            raise self._auth_error("missing_access_token")
        await super().authenticate(access_token, refresh_token)
        if self.dbx is not None:
            self.dbx.close()
        # Only the access token is handed over, so an expired token surfaces
        # as an AuthError instead of being refreshed behind the store's back.
        self.dbx = dropbox.Dropbox(oauth2_access_token=access_token, timeout=self.timeout)
        logging.info("Dropbox client initialized successfully.")

    async def refresh_access_token(self) -> OAuthTokens:
        if not self.refresh_token:
            raise self._auth_error("no_refresh_token")
        tokens = await self._run(self._token_request, {
            "grant_type": "refresh_token",
            "refresh_token": self.refresh_token,
        })
        await self.authenticate(tokens.access_token, tokens.refresh_token or self.refresh_token)
        logging.info("Dropbox access token refreshed.")
        return tokens

    def _client(self) -> dropbox.Dropbox:
        if self.dbx is None:
            raise self._auth_error("not_authenticated")
        return self.dbx

    def _translate_error(self, error: Exception) -> StorageError:
        if isinstance(error, ApiError):
            summary = f"{error.user_message_text or ''} {error.error!r}"
            if "not_found" in summary:
                return self._error(NotFoundError, f"Dropbox path not found: {error.error}", error)
            if "insufficient_space" in summary:
                return self._error(QuotaExceededError, "Dropbox storage is full", error)
            if "conflict" in summary or "shared_link_already_exists" in summary:
                return self._error(ConflictError, f"Dropbox conflict: {error.error}", error)
            if "too_many_write_operations" in summary:
                return self._error(TransientError, "Dropbox is busy, retry later", error)
            return self._error(PermanentError, f"Dropbox API error: {error.error}", error)
        if isinstance(error, DropboxAuthError):
            reason = "expired_access_token" if "expired" in repr(error.error) else "invalid_access_token"
            return self._auth_error(reason, error)
        if isinstance(error, (RateLimitError, InternalServerError)):
            return self._error(TransientError, f"Dropbox is temporarily unavailable: {error}", error)
        if isinstance(error, BadInputError):
            return self._error(PermanentError, f"Dropbox rejected the request: {error.message}", error)
        if isinstance(error, DropboxHttpError):
            if error.status_code >= 500:
                return self._error(TransientError, f"Dropbox HTTP {error.status_code}", error)
            return self._error(PermanentError, f"Dropbox HTTP {error.status_code}: {error.body}", error)
        if isinstance(error, requests.HTTPError) and error.response is not None:
            if error.response.status_code in (400, 401):
                return self._auth_error("invalid_grant", error)
        if isinstance(error, requests.Timeout):
            return self._timeout_error(error)
        if isinstance(error, requests.RequestException):
            return self._error(TransientError, f"Dropbox is unreachable: {error}", error)
        return super()._translate_error(error)

    # --- mapping ---

    def _item(self, entry: DropboxFileMetadata) -> StorageItem:
        modified = entry.server_modified.replace(tzinfo=timezone.utc)
        return StorageItem(
            id=entry.path_display,
            name=entry.name,
            size=entry.size,
            mime_type=mimetypes.guess_type(entry.name)[0] or "application/octet-stream",
            path=entry.path_display,
            created_at=entry.client_modified.replace(tzinfo=timezone.utc),
            updated_at=modified,
        )

    @staticmethod
    def _folder(entry: DropboxFolderMetadata) -> StorageFolder:
        parent = posixpath.dirname(entry.path_display)
        return StorageFolder(
            id=entry.path_display,
            name=entry.name,
            path=entry.path_display,
            parent_id="" if parent == "/" else parent,
        )

    @staticmethod
    def _write_mode(options: UploadOptions) -> WriteMode:
        return WriteMode("overwrite") if options.overwrite else WriteMode("add")

    # --- files ---

    async def upload_file(self, data: bytes, options: UploadOptions) -> StorageItem:
        remote_path = _join(options.folder_id, options.file_name)
        size = len(data)
        if size < self.settings.DROPBOX_UPLOAD_THRESHOLD:
            logging.info(f"Uploading {size} bytes to {remote_path} (single upload)...")
            metadata = await self._run(
                self._client().files_upload, data, remote_path,
                mode=self._write_mode(options), autorename=not options.overwrite,
            )
            return self._item(metadata)

        logging.info(f"Starting chunked upload of {size} bytes to {remote_path}...")
        uploader = ChunkedUploader(
            DropboxUploadSession(self, remote_path, options),
            self.kind,
            remote_path,
            self.settings.DROPBOX_UPLOAD_CHUNK_SIZE,
        )
        return await uploader.upload(data)

    def _download(self, file_id: str) -> bytes:
        _, response = self._client().files_download(file_id)
        try:
            return response.content
        finally:
            response.close()

    async def download_file(self, file_id: str, byte_range: Optional[ByteRange] = None) -> bytes:
        """Dropbox downloads have no range support here; ranges are sliced from the full file."""
        logging.info(f"Downloading {file_id}...")
        data = await self._run(self._download, file_id)
        return byte_range.slice(data) if byte_range is not None else data

    async def delete_file(self, file_id: str) -> None:
        logging.info(f"Deleting {file_id}...")
        await self._run(self._client().files_delete_v2, file_id)

    async def _metadata(self, path: str):
        return await self._run(self._client().files_get_metadata, path)

    async def get_file(self, file_id: str) -> StorageItem:
        entry = await self._metadata(file_id)
        if not isinstance(entry, DropboxFileMetadata):
            raise NotFoundError(f"Dropbox path '{file_id}' is not a file", provider=self.kind.value)
        return self._item(entry)

    def _list_all(self, folder_id: str):
        result = self._client().files_list_folder(folder_id)  # Non-recursive
        all_entries = list(result.entries)
        while result.has_more:
            logging.info("Found more files, continuing listing...")
            result = self._client().files_list_folder_continue(result.cursor)
            all_entries.extend(result.entries)
        return all_entries

    async def list_files(self, folder_id: Optional[str] = None, limit: int = 100, offset: int = 0) -> ListResult:
        logging.info(f"Listing files in Dropbox path: '{folder_id or ''}'")
        entries = await self._run(self._list_all, folder_id or "")
        folders = sorted(
            (self._folder(e) for e in entries if isinstance(e, DropboxFolderMetadata)),
            key=lambda f: f.name.lower(),
        )
        files = sorted(
            (self._item(e) for e in entries if isinstance(e, DropboxFileMetadata)),
            key=lambda f: f.name.lower(),
        )
        return self._paginate(files, folders, limit, offset)

    async def move_file(self, file_id: str, target_folder_id: Optional[str] = None) -> StorageItem:
        to_path = _join(target_folder_id, posixpath.basename(file_id))
        logging.info(f"Moving {file_id} to {to_path}...")
        result = await self._run(self._client().files_move_v2, file_id, to_path, autorename=True)
        return self._item(result.metadata)

    async def copy_file(self, file_id: str, target_folder_id: Optional[str] = None) -> StorageItem:
        to_path = _join(target_folder_id, posixpath.basename(file_id))
        logging.info(f"Copying {file_id} to {to_path}...")
        result = await self._run(self._client().files_copy_v2, file_id, to_path, autorename=True)
        return self._item(result.metadata)

    # --- folders ---

    async def create_folder(self, name: str, parent_id: Optional[str] = None) -> StorageFolder:
        path = _join(parent_id, name)
        result = await self._run(self._client().files_create_folder_v2, path, autorename=False)
        logging.info(f"Created Dropbox folder {result.metadata.path_display}")
        return self._folder(result.metadata)

    async def get_folder(self, folder_id: str) -> StorageFolder:
        if not folder_id:
            raise NotFoundError("The root folder has no metadata", provider=self.kind.value)
        entry = await self._metadata(folder_id)
        if not isinstance(entry, DropboxFolderMetadata):
            raise NotFoundError(f"Dropbox path '{folder_id}' is not a folder", provider=self.kind.value)
        return self._folder(entry)

    async def delete_folder(self, folder_id: str) -> None:
        await self.get_folder(folder_id)
        logging.info(f"Deleting folder {folder_id}...")
        await self._run(self._client().files_delete_v2, folder_id)

    # --- sharing, search, quota, previews ---

    def _create_link(self, path: str, options: ShareOptions):
        settings = SharedLinkSettings(
            requested_visibility=RequestedVisibility.password if options.password else RequestedVisibility.public,
            link_password=options.password,
            expires=_utc(options.expires_at),
        )
        try:
            return self._client().sharing_create_shared_link_with_settings(path, settings=settings)
        except ApiError as e:
            if not e.error.is_shared_link_already_exists():
                raise
            logging.warning(f"Dropbox link for {path} already exists; reusing it.")
            links = self._client().sharing_list_shared_links(path=path, direct_only=True).links
            if not links:
                raise
            return links[0]

    async def create_share_link(self, file_id: str, options: Optional[ShareOptions] = None) -> ShareLink:
        """The link URL doubles as the share id, which is what revocation needs."""
        options = options or ShareOptions()
        if options.allow_edit:
            logging.warning("Dropbox shared links are view-only; ignoring edit permission.")
        link = await self._run(self._create_link, file_id, options)
        expires = link.expires.replace(tzinfo=timezone.utc) if link.expires else None
        return ShareLink(url=link.url, share_id=link.url, expires_at=expires)

    async def revoke_share_link(self, file_id: str, share_id: str) -> None:
        logging.info(f"Revoking Dropbox shared link of {file_id}")
        await self._run(self._client().sharing_revoke_shared_link, share_id)

    def _search(self, query: str, options: SearchOptions) -> List[StorageItem]:
        search_options = DropboxSearchOptions(
            path=options.folder_id or None, max_results=min(max(options.limit, 1), 1000)
        )
        result = self._client().files_search_v2(query, options=search_options)
        items = []
        for match in result.matches:
            entry = match.metadata.get_metadata()
            if not isinstance(entry, DropboxFileMetadata):
                continue
            item = self._item(entry)
            if options.mime_type and item.mime_type != options.mime_type:
                continue
            items.append(item)
        return items[:options.limit]

    async def search_files(self, query: str, options: Optional[SearchOptions] = None) -> List[StorageItem]:
        return await self._run(self._search, query, options or SearchOptions())

    def _space_usage(self) -> Quota:
        usage = self._client().users_get_space_usage()
        allocation = usage.allocation
        if allocation.is_individual():
            total = allocation.get_individual().allocated
        elif allocation.is_team():
            total = allocation.get_team().allocated
        else:
            return Quota.unlimited(used=usage.used)
        return Quota(total=total, used=usage.used, available=max(0, total - usage.used))

    async def get_quota(self) -> Quota:
        return await self._run(self._space_usage)

    def _fetch_thumbnail(self, file_id: str, size: int) -> bytes:
        variant = next((v for limit, v in THUMBNAIL_SIZES if size <= limit), ThumbnailSize.w2048h1536)
        _, response = self._client().files_get_thumbnail_v2(
            dropbox.files.PathOrLink.path(file_id), format=ThumbnailFormat.png, size=variant
        )
        try:
            return response.content
        finally:
            response.close()

    async def get_thumbnail(self, file_id: str, size: int = 256) -> Optional[bytes]:
        try:
            return await self._run(self._fetch_thumbnail, file_id, size)
        except StorageError as e:
            logging.warning(f"No thumbnail for Dropbox file {file_id}: {e}")
            return None

    async def get_preview_url(self, file_id: str) -> Optional[str]:
        try:
            result = await self._run(self._client().files_get_temporary_link, file_id)
            return result.link
        except StorageError as e:
            logging.warning(f"No preview URL for Dropbox file {file_id}: {e}")
            return None
