# onedrive.py
import asyncio
import logging
import time
from typing import Any, Dict, List, Optional
import urllib.parse

import requests

from .exceptions import (
    ConflictError,
    NotFoundError,
    PermanentError,
    QuotaExceededError,
    StorageError,
    StorageTimeoutError,
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

GRAPH_URL = "https://graph.microsoft.com/v1.0"
AUTHORIZE_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
SCOPE = "https://graph.microsoft.com/Files.ReadWrite.All offline_access"
COPY_POLL_SECONDS = 1.0


class OneDriveUploadSession(ChunkProtocol):
    """
    Graph upload session glue. Byte ranges must arrive in order; the service
    creates the item when the last range is received.
    """

    def __init__(self, provider: "OneDriveProvider", parent_path: str, options: UploadOptions):
        self.provider = provider
        self.parent_path = parent_path
        self.options = options
        self.total_size = 0

    async def open(self) -> str:
        behavior = "replace" if self.options.overwrite else "rename"
        path = f"{self.parent_path}:/{urllib.parse.quote(self.options.file_name)}:/createUploadSession"
        body = {"item": {"@microsoft.graph.conflictBehavior": behavior, "name": self.options.file_name}}
        data = await self.provider._run(self.provider._call, "POST", path, json=body)
        return data["uploadUrl"]

    def _put_range(self, upload_url: str, offset: int, chunk: bytes) -> Dict[str, Any]:
        end = offset + len(chunk) - 1
        # The upload URL is pre-authenticated; it must not carry the bearer token.
        response = requests.put(
            upload_url,
            data=chunk,
            headers={
                "Content-Length": str(len(chunk)),
                "Content-Range": f"bytes {offset}-{end}/{self.total_size}",
            },
            timeout=self.provider.timeout,
        )
        response.raise_for_status()
        return response.json() if response.content else {}

    async def append(self, session_id: str, index: int, offset: int, chunk: bytes) -> Dict[str, Any]:
        if not self.total_size:
            raise PermanentError("Upload size unknown", provider=self.provider.kind.value)
        logging.info(f"Uploading range at offset {offset} of '{self.options.file_name}'")
        return await self.provider._run(self._put_range, session_id, offset, chunk)

    async def commit(self, session_id: str, parts: List[Dict[str, Any]], total_size: int) -> StorageItem:
        final = parts[-1] if parts else {}
        if "id" not in final:
            raise PermanentError(
                f"OneDrive did not confirm the upload of '{self.options.file_name}'",
                provider=self.provider.kind.value,
            )
        return self.provider._item(final)

    async def abort(self, session_id: Optional[str]) -> None:
        response = await self.provider._run(requests.delete, session_id, timeout=self.provider.timeout)
        if response.status_code not in (204, 404):
            response.raise_for_status()


class OneDriveProvider(StorageProvider):
    """
    OneDrive adapter speaking Microsoft Graph over `requests`.
    Ids are drive item ids; the root is addressed as `/me/drive/root`.
    Name collisions are resolved by the service, which renames the new item.
    """

    kind = ProviderKind.ONEDRIVE
    display_name = "OneDrive"
    requires_user_credentials = True

    def __init__(self, settings, user_id=None):
        super().__init__(settings, user_id)
        self.session: Optional[requests.Session] = None
        self._root_reference: Optional[Dict[str, str]] = None

    @classmethod
    def is_configured(cls, settings) -> bool:
        return settings.onedrive_configured

    async def close(self) -> None:
        if self.session is not None:
            self.session.close()
            self.session = None

    # --- authentication ---

    def get_auth_url(self, state: Optional[str] = None) -> str:
        params = {
            "client_id": self.settings.ONEDRIVE_CLIENT_ID,
            "response_type": "code",
            "redirect_uri": self.settings.ONEDRIVE_REDIRECT_URI,
            "scope": SCOPE,
            "response_mode": "query",
        }
        if state:
            params["state"] = state
        return f"{AUTHORIZE_URL}?{urllib.parse.urlencode(params)}"

    def _token_request(self, params: Dict[str, str]) -> OAuthTokens:
        payload = {
            "client_id": self.settings.ONEDRIVE_CLIENT_ID,
            "client_secret": self.settings.ONEDRIVE_CLIENT_SECRET,
            **params,
        }
        response = requests.post(TOKEN_URL, data=payload, timeout=self.timeout)
        response.raise_for_status()
        data = response.json()
        return OAuthTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
        )

    async def handle_callback(self, code: str, state: Optional[str] = None) -> OAuthTokens:
        logging.info("Exchanging Microsoft authorization code for tokens")
        return await self._run(self._token_request, {
            "code": code,
            "redirect_uri": self.settings.ONEDRIVE_REDIRECT_URI,
            "grant_type": "authorization_code",
        })

    async def authenticate(self, access_token: Optional[str], refresh_token: Optional[str] = None) -> None:
        if not access_token:
            raise self._auth_error("missing_access_token")
        await super().authenticate(access_token, refresh_token)
        if self.session is None:
            self.session = requests.Session()
        self.session.headers["Authorization"] = f"Bearer {access_token}"
        logging.info("OneDrive client initialized successfully.")

    async def refresh_access_token(self) -> OAuthTokens:
        if not self.refresh_token:
            raise self._auth_error("no_refresh_token")
        tokens = await self._run(self._token_request, {
            "refresh_token": self.refresh_token,
            "grant_type": "refresh_token",
            "scope": SCOPE,
        })
        await self.authenticate(tokens.access_token, tokens.refresh_token or self.refresh_token)
        logging.info("OneDrive access token refreshed.")
        return tokens

    # --- requests ---

    def _session(self) -> requests.Session:
        if self.session is None:
            raise self._auth_error("not_authenticated")
        return self.session

    def _call(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = path if path.startswith("https://") else GRAPH_URL + path
        response = self._session().request(method, url, timeout=self.timeout, **kwargs)
        response.raise_for_status()
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def _translate_error(self, error: Exception) -> StorageError:
        if isinstance(error, requests.HTTPError) and error.response is not None:
            status = error.response.status_code
            try:
                body = error.response.json()
            except ValueError:
                body = {}
            details = body.get("error", {})
            code = details.get("code", "") if isinstance(details, dict) else str(details)
            message = (details.get("message") if isinstance(details, dict) else None) or body.get(
                "error_description"
            ) or error.response.reason
            if status == 404:
                return self._error(NotFoundError, f"OneDrive item not found: {message}", error)
            if status == 401 or code == "invalid_grant":
                return self._auth_error(code or "invalid_token", error)
            if status == 409 or code == "nameAlreadyExists":
                return self._error(ConflictError, f"OneDrive conflict: {message}", error)
            if status == 507 or code in ("quotaLimitReached", "insufficientStorage"):
                return self._error(QuotaExceededError, f"OneDrive storage is full: {message}", error)
            if status in (429, 503, 504) or status >= 500:
                return self._error(TransientError, f"OneDrive is temporarily unavailable: {message}", error)
            return self._error(PermanentError, f"OneDrive error {status} {code}: {message}", error)
        if isinstance(error, requests.Timeout):
            return self._timeout_error(error)
        if isinstance(error, requests.RequestException):
            return self._error(TransientError, f"OneDrive is unreachable: {error}", error)
        return super()._translate_error(error)

    # --- mapping ---

    @staticmethod
    def _item_path(item_id: Optional[str]) -> str:
        if not item_id:
            return "/me/drive/root"
        return f"/me/drive/items/{urllib.parse.quote(item_id, safe='')}"

    @staticmethod
    def _item(data: Dict[str, Any]) -> StorageItem:
        thumbnails = data.get("thumbnails") or [{}]
        fields = {
            "id": data["id"],
            "name": data.get("name", ""),
            "size": data.get("size") or 0,
            "mime_type": (data.get("file") or {}).get("mimeType") or "application/octet-stream",
            "path": data.get("webUrl") or "/" + data.get("name", ""),
            "url": data.get("webUrl"),
            "thumbnail_url": (thumbnails[0].get("medium") or {}).get("url"),
        }
        if data.get("createdDateTime"):
            fields["created_at"] = data["createdDateTime"]
        if data.get("lastModifiedDateTime"):
            fields["updated_at"] = data["lastModifiedDateTime"]
        return StorageItem(**fields)

    @staticmethod
    def _folder(data: Dict[str, Any]) -> StorageFolder:
        fields = {
            "id": data["id"],
            "name": data.get("name", ""),
            "path": data.get("webUrl") or "/" + data.get("name", ""),
            "parent_id": (data.get("parentReference") or {}).get("id"),
        }
        if data.get("createdDateTime"):
            fields["created_at"] = data["createdDateTime"]
        if data.get("lastModifiedDateTime"):
            fields["updated_at"] = data["lastModifiedDateTime"]
        return StorageFolder(**fields)

    def _parent_reference(self, folder_id: Optional[str]) -> Dict[str, str]:
        if folder_id:
            return {"id": folder_id}
        if self._root_reference is None:
            root = self._call("GET", "/me/drive/root", params={"$select": "id,parentReference"})
            self._root_reference = {
                "driveId": (root.get("parentReference") or {}).get("driveId", ""),
                "id": root["id"],
            }
        return dict(self._root_reference)

    # --- files ---

    async def upload_file(self, data: bytes, options: UploadOptions) -> StorageItem:
        parent = self._item_path(options.folder_id)
        size = len(data)
        if size <= self.settings.ONEDRIVE_SIMPLE_UPLOAD_LIMIT:
            logging.info(f"Uploading {size} bytes to OneDrive '{options.file_name}' (single request)")
            behavior = "replace" if options.overwrite else "rename"
            path = f"{parent}:/{urllib.parse.quote(options.file_name)}:/content"
            item = await self._run(
                self._call, "PUT", path,
                data=data,
                params={"@microsoft.graph.conflictBehavior": behavior},
                headers={"Content-Type": options.mime_type},
            )
            return self._item(item)

        logging.info(f"Uploading {size} bytes to OneDrive '{options.file_name}' (upload session)")
        protocol = OneDriveUploadSession(self, parent, options)
        protocol.total_size = size
        uploader = ChunkedUploader(protocol, self.kind, options.file_name, self.settings.ONEDRIVE_CHUNK_SIZE)
        return await uploader.upload(data)

    def _download(self, file_id: str, byte_range: Optional[ByteRange]) -> bytes:
        headers = {"Range": byte_range.header()} if byte_range is not None else {}
        # Graph redirects to a pre-authenticated URL; requests drops the bearer token across hosts.
        response = self._session().get(
            GRAPH_URL + self._item_path(file_id) + "/content", headers=headers, timeout=self.timeout
        )
        response.raise_for_status()
        return response.content

    async def download_file(self, file_id: str, byte_range: Optional[ByteRange] = None) -> bytes:
        logging.info(f"Downloading OneDrive item '{file_id}'")
        return await self._run(self._download, file_id, byte_range)

    async def delete_file(self, file_id: str) -> None:
        logging.info(f"Deleting OneDrive item '{file_id}'")
        await self._run(self._call, "DELETE", self._item_path(file_id))

    async def get_file(self, file_id: str) -> StorageItem:
        data = await self._run(self._call, "GET", self._item_path(file_id))
        if "folder" in data:
            raise NotFoundError(f"OneDrive item '{file_id}' is a folder", provider=self.kind.value)
        return self._item(data)

    def _children(self, folder_id: Optional[str]) -> List[Dict[str, Any]]:
        entries = []
        url = self._item_path(folder_id) + "/children"
        params = {"$top": 200}
        while url:
            page = self._call("GET", url, params=params)
            entries.extend(page.get("value", []))
            url = page.get("@odata.nextLink")
            params = None
        return entries

    async def list_files(self, folder_id: Optional[str] = None, limit: int = 100, offset: int = 0) -> ListResult:
        entries = await self._run(self._children, folder_id)
        folders = [self._folder(e) for e in entries if "folder" in e]
        files = [self._item(e) for e in entries if "folder" not in e]
        return self._paginate(files, folders, limit, offset)

    def _move(self, file_id: str, target_folder_id: Optional[str]) -> Dict[str, Any]:
        return self._call(
            "PATCH", self._item_path(file_id),
            json={"parentReference": self._parent_reference(target_folder_id)},
            params={"@microsoft.graph.conflictBehavior": "rename"},
        )

    async def move_file(self, file_id: str, target_folder_id: Optional[str] = None) -> StorageItem:
        logging.info(f"Moving OneDrive item '{file_id}' to folder '{target_folder_id or 'root'}'")
        return self._item(await self._run(self._move, file_id, target_folder_id))

    def _start_copy(self, file_id: str, target_folder_id: Optional[str]) -> str:
        response = self._session().post(
            GRAPH_URL + self._item_path(file_id) + "/copy",
            json={"parentReference": self._parent_reference(target_folder_id)},
            params={"@microsoft.graph.conflictBehavior": "rename"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.headers["Location"]

    def _copy_progress(self, monitor_url: str) -> Dict[str, Any]:
        # The monitor URL needs no authentication.
        status = requests.get(monitor_url, timeout=self.timeout)
        status.raise_for_status()
        return status.json()

    async def copy_file(self, file_id: str, target_folder_id: Optional[str] = None) -> StorageItem:
        logging.info(f"Copying OneDrive item '{file_id}' to folder '{target_folder_id or 'root'}'")
        monitor_url = await self._run(self._start_copy, file_id, target_folder_id)
        # Copies run asynchronously; the monitor is polled until the request deadline.
        deadline = time.monotonic() + self.timeout
        while True:
            progress = await self._run(self._copy_progress, monitor_url)
            if progress.get("status") == "completed":
                return self._item(await self._run(self._call, "GET", self._item_path(progress["resourceId"])))
            if progress.get("status") == "failed":
                raise PermanentError(
                    f"OneDrive copy of '{file_id}' failed: {progress.get('error', {}).get('message', '')}",
                    provider=self.kind.value,
                )
            if time.monotonic() >= deadline:
                raise self._error(
                    StorageTimeoutError,
                    f"OneDrive copy of '{file_id}' did not finish within {self.timeout}s",
                )
            await asyncio.sleep(COPY_POLL_SECONDS)

    # --- folders ---

    async def create_folder(self, name: str, parent_id: Optional[str] = None) -> StorageFolder:
        body = {"name": name, "folder": {}, "@microsoft.graph.conflictBehavior": "fail"}
        data = await self._run(self._call, "POST", self._item_path(parent_id) + "/children", json=body)
        logging.info(f"Created OneDrive folder '{name}' with ID: {data['id']}")
        return self._folder(data)

    async def get_folder(self, folder_id: str) -> StorageFolder:
        data = await self._run(self._call, "GET", self._item_path(folder_id))
        if "folder" not in data:
            raise NotFoundError(f"OneDrive item '{folder_id}' is not a folder", provider=self.kind.value)
        return self._folder(data)

    async def delete_folder(self, folder_id: str) -> None:
        await self.get_folder(folder_id)
        logging.info(f"Deleting OneDrive folder '{folder_id}'")
        await self._run(self._call, "DELETE", self._item_path(folder_id))

    # --- sharing, search, quota, previews ---

    async def create_share_link(self, file_id: str, options: Optional[ShareOptions] = None) -> ShareLink:
        options = options or ShareOptions()
        body: Dict[str, Any] = {"type": "edit" if options.allow_edit else "view", "scope": "anonymous"}
        if options.expires_at:
            body["expirationDateTime"] = options.expires_at.isoformat()
        if options.password:
            # Only honoured on OneDrive Personal accounts.
            body["password"] = options.password
        data = await self._run(self._call, "POST", self._item_path(file_id) + "/createLink", json=body)
        return ShareLink(
            url=data["link"]["webUrl"],
            share_id=data["id"],
            expires_at=data.get("expirationDateTime") or options.expires_at,
        )

    async def revoke_share_link(self, file_id: str, share_id: str) -> None:
        logging.info(f"Revoking OneDrive permission '{share_id}' of '{file_id}'")
        path = f"{self._item_path(file_id)}/permissions/{urllib.parse.quote(share_id, safe='')}"
        await self._run(self._call, "DELETE", path)

    async def search_files(self, query: str, options: Optional[SearchOptions] = None) -> List[StorageItem]:
        options = options or SearchOptions()
        escaped = query.replace("'", "''")
        path = f"{self._item_path(options.folder_id)}/search(q='{urllib.parse.quote(escaped)}')"
        data = await self._run(self._call, "GET", path, params={"$top": options.limit})
        results = []
        for entry in data.get("value", []):
            if "file" not in entry:
                continue
            item = self._item(entry)
            if options.mime_type and item.mime_type != options.mime_type:
                continue
            results.append(item)
        return results[:options.limit]

    async def get_quota(self) -> Quota:
        data = await self._run(self._call, "GET", "/me/drive", params={"$select": "quota"})
        quota = data.get("quota", {})
        return Quota(
            total=quota.get("total", 0),
            used=quota.get("used", 0),
            available=quota.get("remaining", 0),
        )

    def _fetch_thumbnail(self, file_id: str, size: int) -> Optional[bytes]:
        data = self._call("GET", self._item_path(file_id) + "/thumbnails")
        sets = data.get("value", [])
        if not sets:
            return None
        variant = "small" if size <= 150 else "medium" if size <= 300 else "large"
        url = (sets[0].get(variant) or {}).get("url")
        if not url:
            return None
        response = requests.get(url, timeout=self.timeout)
        return response.content if response.ok else None

    async def get_thumbnail(self, file_id: str, size: int = 256) -> Optional[bytes]:
        try:
            return await self._run(self._fetch_thumbnail, file_id, size)
        except StorageError as e:
            logging.warning(f"No thumbnail for OneDrive item '{file_id}': {e}")
            return None

    async def get_preview_url(self, file_id: str) -> Optional[str]:
        try:
            data = await self._run(self._call, "POST", self._item_path(file_id) + "/preview", json={})
            return data.get("getUrl")
        except StorageError as e:
            logging.warning(f"No preview URL for OneDrive item '{file_id}': {e}")
            return None
