# gdrive.py
from datetime import timezone
import io
import logging
from typing import List, Optional

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseDownload, MediaIoBaseUpload
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

SCOPES = [
    "https://www.googleapis.com/auth/drive.file",
    "https://www.googleapis.com/auth/drive.readonly",
]
AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"
FOLDER_MIME = "application/vnd.google-apps.folder"
FILE_FIELDS = "id,name,size,mimeType,createdTime,modifiedTime,webViewLink,thumbnailLink,parents"
DEFAULT_THUMBNAIL_SIZE = "=s220"


def _quote(value: str) -> str:
    """Escapes a value for a Drive query string literal."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _aware(value):
    # google-auth reports expiry as naive UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class GoogleDriveProvider(StorageProvider):
    """
    Google Drive adapter. Ids are Drive file ids; the user's root is "root".
    Drive allows several files with one name in a folder, so uploads never
    conflict; with `overwrite` an existing file of that name gets new content.
    """

    kind = ProviderKind.GOOGLE_DRIVE
    display_name = "Google Drive"
    requires_user_credentials = True

    def __init__(self, settings, user_id=None):
        super().__init__(settings, user_id)
        self.credentials: Optional[Credentials] = None
        self.service = None

    @classmethod
    def is_configured(cls, settings) -> bool:
        return settings.gdrive_configured

    # --- authentication ---

    def _client_config(self) -> dict:
        return {
            "web": {
                "client_id": self.settings.GOOGLE_CLIENT_ID,
                "client_secret": self.settings.GOOGLE_CLIENT_SECRET,
                "auth_uri": AUTH_URI,
                "token_uri": TOKEN_URI,
                "redirect_uris": [self.settings.GOOGLE_REDIRECT_URI] if self.settings.GOOGLE_REDIRECT_URI else [],
            }
        }

    def _flow(self, state: Optional[str] = None) -> Flow:
        # The consent URL and the code exchange run in different processes,
        # so no PKCE verifier can be carried between them.
        return Flow.from_client_config(
            self._client_config(),
            scopes=SCOPES,
            state=state,
            redirect_uri=self.settings.GOOGLE_REDIRECT_URI,
            autogenerate_code_verifier=False,
        )

    def get_auth_url(self, state: Optional[str] = None) -> str:
        url, _ = self._flow(state).authorization_url(access_type="offline", prompt="consent")
        return url

    def _exchange(self, code: str, state: Optional[str]) -> OAuthTokens:
        flow = self._flow(state)
        flow.fetch_token(code=code)
        creds = flow.credentials
        return OAuthTokens(
            access_token=creds.token,
            refresh_token=creds.refresh_token,
            expires_at=_aware(creds.expiry),
        )

    async def handle_callback(self, code: str, state: Optional[str] = None) -> OAuthTokens:
        logging.info("Exchanging Google authorization code for tokens")
        return await self._run(self._exchange, code, state)

    async def authenticate(self, access_token: Optional[str], refresh_token: Optional[str] = None) -> None:
        if not access_token:
            raise self._auth_error("missing_access_token")
        await super().authenticate(access_token, refresh_token)
        # Access token only; refreshing is left to StorageManager.
        self.credentials = Credentials(token=access_token)
        self.service = build("drive", "v3", credentials=self.credentials, cache_discovery=False)
        logging.info("Google Drive client initialized successfully.")

    async def refresh_access_token(self) -> OAuthTokens:
        if not self.refresh_token:
            raise self._auth_error("no_refresh_token")
        refresher = Credentials(
            token=None,
            refresh_token=self.refresh_token,
            token_uri=TOKEN_URI,
            client_id=self.settings.GOOGLE_CLIENT_ID,
            client_secret=self.settings.GOOGLE_CLIENT_SECRET,
            scopes=SCOPES,
        )
        await self._run(refresher.refresh, Request())
        previous_refresh = self.refresh_token
        await self.authenticate(refresher.token, refresher.refresh_token or previous_refresh)
        logging.info("Google Drive access token refreshed.")
        return OAuthTokens(
            access_token=refresher.token,
            refresh_token=self.refresh_token if self.refresh_token != previous_refresh else None,
            expires_at=_aware(refresher.expiry),
        )

    def _drive(self):
        if self.service is None:
            raise self._auth_error("not_authenticated")
        return self.service

    def _translate_error(self, error: Exception) -> StorageError:
        if isinstance(error, HttpError):
            status = error.resp.status
            content = error.content or b""
            if isinstance(content, str):
                content = content.encode("utf-8")
            if status == 404:
                return self._error(NotFoundError, f"Google Drive item not found: {error.reason}", error)
            if status == 401:
                return self._auth_error("invalid_token", error)
            if status == 403 and b"storageQuotaExceeded" in content:
                return self._error(QuotaExceededError, "Google Drive storage quota exceeded", error)
            if status == 403 and b"ateLimitExceeded" in content:
                return self._error(TransientError, f"Google Drive rate limit: {error.reason}", error)
            if status == 409:
                return self._error(ConflictError, f"Google Drive conflict: {error.reason}", error)
            if status == 429 or status >= 500:
                return self._error(TransientError, f"Google Drive is temporarily unavailable: {error.reason}", error)
            return self._error(PermanentError, f"Google Drive error {status}: {error.reason}", error)
        if isinstance(error, RefreshError):
            return self._auth_error("invalid_grant", error)
        if isinstance(error, TransportError):
            return self._error(TransientError, f"Google is unreachable: {error}", error)
        if isinstance(error, Warning):
            # oauthlib signals a scope mismatch on code exchange this way.
            return self._auth_error("scope_changed", error)
        return super()._translate_error(error)

    # --- mapping ---

    @staticmethod
    def _item(data: dict) -> StorageItem:
        fields = {
            "id": data["id"],
            "name": data.get("name", ""),
            "size": int(data.get("size") or 0),
            "mime_type": data.get("mimeType") or "application/octet-stream",
            "path": data.get("webViewLink") or "/" + data.get("name", ""),
            "url": data.get("webViewLink"),
            "thumbnail_url": data.get("thumbnailLink"),
        }
        if data.get("createdTime"):
            fields["created_at"] = data["createdTime"]
        if data.get("modifiedTime"):
            fields["updated_at"] = data["modifiedTime"]
        return StorageItem(**fields)

    @staticmethod
    def _folder(data: dict) -> StorageFolder:
        fields = {
            "id": data["id"],
            "name": data.get("name", ""),
            "path": data.get("webViewLink") or "/" + data.get("name", ""),
            "parent_id": (data.get("parents") or [None])[0],
        }
        if data.get("createdTime"):
            fields["created_at"] = data["createdTime"]
        if data.get("modifiedTime"):
            fields["updated_at"] = data["modifiedTime"]
        return StorageFolder(**fields)

    def _get_metadata(self, item_id: str) -> dict:
        return self._drive().files().get(fileId=item_id, fields=FILE_FIELDS).execute()

    def _list_all(self, query: str, page_size: int = 1000, limit: Optional[int] = None) -> List[dict]:
        entries, page_token = [], None
        while True:
            response = self._drive().files().list(
                q=query,
                pageSize=page_size,
                pageToken=page_token,
                orderBy="folder,name",
                fields=f"nextPageToken, files({FILE_FIELDS})",
            ).execute()
            entries.extend(response.get("files", []))
            page_token = response.get("nextPageToken")
            if not page_token or (limit is not None and len(entries) >= limit):
                return entries if limit is None else entries[:limit]

    # --- files ---

    def _find_by_name(self, name: str, folder_id: str) -> Optional[str]:
        query = (
            f"name='{_quote(name)}' and '{_quote(folder_id)}' in parents and "
            f"mimeType!='{FOLDER_MIME}' and trashed=false"
        )
        files = self._drive().files().list(q=query, fields="files(id)", pageSize=1).execute().get("files", [])
        return files[0]["id"] if files else None

    def _prepare_upload(self, data: bytes, options: UploadOptions):
        folder_id = options.folder_id or "root"
        resumable = len(data) >= self.settings.GDRIVE_RESUMABLE_THRESHOLD
        media = MediaIoBaseUpload(
            io.BytesIO(data),
            mimetype=options.mime_type,
            chunksize=self.settings.GDRIVE_CHUNK_SIZE,
            resumable=resumable,
        )
        existing_id = self._find_by_name(options.file_name, folder_id) if options.overwrite else None
        files = self._drive().files()
        if existing_id:
            logging.info(f"Replacing content of Google Drive file {existing_id} ('{options.file_name}')")
            return files.update(fileId=existing_id, media_body=media, fields=FILE_FIELDS), resumable
        body = {"name": options.file_name, "parents": [folder_id]}
        return files.create(body=body, media_body=media, fields=FILE_FIELDS), resumable

    async def upload_file(self, data: bytes, options: UploadOptions) -> StorageItem:
        logging.info(f"Uploading {len(data)} bytes to Google Drive folder '{options.folder_id or 'root'}'")
        request, resumable = await self._run(self._prepare_upload, data, options)
        if not resumable:
            return self._item(await self._run(request.execute))
        # The request timeout applies per chunk.
        response = None
        while response is None:
            status, response = await self._run(request.next_chunk)
            if status:
                logging.info(f"Uploaded {int(status.progress() * 100)}% of '{options.file_name}'")
        return self._item(response)

    async def download_file(self, file_id: str, byte_range: Optional[ByteRange] = None) -> bytes:
        logging.info(f"Downloading Google Drive file '{file_id}'")
        request = self._drive().files().get_media(fileId=file_id)
        if byte_range is not None:
            request.headers["Range"] = byte_range.header()
            return await self._run(request.execute)
        buffer = io.BytesIO()
        downloader = MediaIoBaseDownload(buffer, request, chunksize=self.settings.GDRIVE_CHUNK_SIZE)
        done = False
        while not done:
            _, done = await self._run(downloader.next_chunk)
        return buffer.getvalue()

    async def delete_file(self, file_id: str) -> None:
        logging.info(f"Deleting Google Drive file '{file_id}'")
        await self._run(lambda: self._drive().files().delete(fileId=file_id).execute())

    async def get_file(self, file_id: str) -> StorageItem:
        data = await self._run(self._get_metadata, file_id)
        if data.get("mimeType") == FOLDER_MIME:
            raise NotFoundError(f"Google Drive id '{file_id}' is a folder", provider=self.kind.value)
        return self._item(data)

    async def list_files(self, folder_id: Optional[str] = None, limit: int = 100, offset: int = 0) -> ListResult:
        query = f"'{_quote(folder_id or 'root')}' in parents and trashed=false"
        entries = await self._run(self._list_all, query)
        folders = [self._folder(e) for e in entries if e.get("mimeType") == FOLDER_MIME]
        files = [self._item(e) for e in entries if e.get("mimeType") != FOLDER_MIME]
        return self._paginate(files, folders, limit, offset)

    def _move(self, file_id: str, target_folder_id: str) -> dict:
        # Retrieve the existing parents to remove them
        current = self._drive().files().get(fileId=file_id, fields="parents").execute()
        previous_parents = ",".join(current.get("parents", []))
        return self._drive().files().update(
            fileId=file_id,
            addParents=target_folder_id,
            removeParents=previous_parents,
            fields=FILE_FIELDS,
        ).execute()

    async def move_file(self, file_id: str, target_folder_id: Optional[str] = None) -> StorageItem:
        logging.info(f"Moving Google Drive file '{file_id}' to folder '{target_folder_id or 'root'}'")
        return self._item(await self._run(self._move, file_id, target_folder_id or "root"))

    async def copy_file(self, file_id: str, target_folder_id: Optional[str] = None) -> StorageItem:
        logging.info(f"Copying Google Drive file '{file_id}' to folder '{target_folder_id or 'root'}'")
        data = await self._run(
            lambda: self._drive().files().copy(
                fileId=file_id, body={"parents": [target_folder_id or "root"]}, fields=FILE_FIELDS
            ).execute()
        )
        return self._item(data)

    # --- folders ---

    async def create_folder(self, name: str, parent_id: Optional[str] = None) -> StorageFolder:
        body = {"name": name, "mimeType": FOLDER_MIME, "parents": [parent_id or "root"]}
        data = await self._run(lambda: self._drive().files().create(body=body, fields=FILE_FIELDS).execute())
        logging.info(f"Created Google Drive folder '{name}' with ID: {data['id']}")
        return self._folder(data)

    async def get_folder(self, folder_id: str) -> StorageFolder:
        data = await self._run(self._get_metadata, folder_id)
        if data.get("mimeType") != FOLDER_MIME:
            raise NotFoundError(f"Google Drive id '{folder_id}' is not a folder", provider=self.kind.value)
        return self._folder(data)

    async def delete_folder(self, folder_id: str) -> None:
        await self.get_folder(folder_id)
        logging.info(f"Deleting Google Drive folder '{folder_id}'")
        await self._run(lambda: self._drive().files().delete(fileId=folder_id).execute())

    # --- sharing, search, quota, previews ---

    async def create_share_link(self, file_id: str, options: Optional[ShareOptions] = None) -> ShareLink:
        """Grants "anyone with the link" access; the permission id is the share id."""
        options = options or ShareOptions()
        if options.password:
            logging.warning("Google Drive share links do not support passwords.")
        if options.expires_at:
            logging.warning("Google Drive cannot expire 'anyone' permissions; ignoring expiry.")
        permission = {"role": "writer" if options.allow_edit else "reader", "type": "anyone"}
        created = await self._run(
            lambda: self._drive().permissions().create(fileId=file_id, body=permission, fields="id").execute()
        )
        data = await self._run(lambda: self._drive().files().get(fileId=file_id, fields="webViewLink").execute())
        return ShareLink(url=data["webViewLink"], share_id=created["id"])

    async def revoke_share_link(self, file_id: str, share_id: str) -> None:
        logging.info(f"Revoking Google Drive permission '{share_id}' of '{file_id}'")
        await self._run(
            lambda: self._drive().permissions().delete(fileId=file_id, permissionId=share_id).execute()
        )

    async def search_files(self, query: str, options: Optional[SearchOptions] = None) -> List[StorageItem]:
        options = options or SearchOptions()
        q = f"name contains '{_quote(query)}' and trashed=false and mimeType!='{FOLDER_MIME}'"
        if options.folder_id:
            q += f" and '{_quote(options.folder_id)}' in parents"
        if options.mime_type:
            q += f" and mimeType='{_quote(options.mime_type)}'"
        entries = await self._run(self._list_all, q, min(options.limit, 1000), options.limit)
        return [self._item(e) for e in entries]

    async def get_quota(self) -> Quota:
        data = await self._run(lambda: self._drive().about().get(fields="storageQuota").execute())
        storage = data.get("storageQuota", {})
        used = int(storage.get("usage") or 0)
        if not storage.get("limit"):
            # Accounts with unlimited storage report no limit.
            return Quota.unlimited(used=used)
        total = int(storage["limit"])
        return Quota(total=total, used=used, available=max(0, total - used))

    def _fetch_thumbnail(self, file_id: str, size: int) -> Optional[bytes]:
        data = self._drive().files().get(fileId=file_id, fields="thumbnailLink").execute()
        link = data.get("thumbnailLink")
        if not link:
            return None
        response = requests.get(
            link.replace(DEFAULT_THUMBNAIL_SIZE, f"=s{size}"),
            headers={"Authorization": f"Bearer {self.access_token}"},
            timeout=self.timeout,
        )
        return response.content if response.ok else None

    async def get_thumbnail(self, file_id: str, size: int = 256) -> Optional[bytes]:
        try:
            return await self._run(self._fetch_thumbnail, file_id, size)
        except StorageError as e:
            logging.warning(f"No thumbnail for Google Drive file '{file_id}': {e}")
            return None

    async def get_preview_url(self, file_id: str) -> Optional[str]:
        try:
            data = await self._run(lambda: self._drive().files().get(fileId=file_id, fields="webViewLink").execute())
            return data.get("webViewLink")
        except StorageError as e:
            logging.warning(f"No preview URL for Google Drive file '{file_id}': {e}")
            return None
