# azure_blob.py
import asyncio
import base64
from datetime import datetime, timedelta, timezone
import logging
import mimetypes
import posixpath
import time
from typing import List, Optional
import uuid

from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceRequestTimeoutError,
    ServiceResponseError,
    ServiceResponseTimeoutError,
)
from azure.storage.blob import (
    BlobBlock,
    BlobPrefix,
    BlobSasPermissions,
    BlobServiceClient,
    ContentSettings,
    generate_blob_sas,
)

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
    ProviderKind,
    Quota,
    SearchOptions,
    ShareLink,
    ShareOptions,
    StorageFolder,
    StorageItem,
    UploadOptions,
    utcnow,
)

FOLDER_MARKER = ".folder"
DEFAULT_SAS_SECONDS = 3600
COPY_POLL_SECONDS = 0.5


def block_id(index: int) -> str:
    """Block ids must share one length within a blob, hence the zero padding."""
    return base64.b64encode(f"block-{index:010d}".encode("utf-8")).decode("ascii")


class AzureBlockUpload(ChunkProtocol):
    """
    Block blob glue. Blocks are staged in order and become visible only when
    the block list is committed.
    """

    def __init__(self, provider: "AzureBlobProvider", blob_name: str, mime_type: str):
        self.provider = provider
        self.blob_name = blob_name
        self.mime_type = mime_type
        self.blob = provider.container.get_blob_client(blob_name)

    async def open(self) -> str:
        # Staged blocks need no server-side session; the blob name identifies the upload.
        return self.blob_name

    async def append(self, session_id: str, index: int, offset: int, chunk: bytes) -> str:
        current = block_id(index)
        logging.info(f"Staging block {index} of '{self.blob_name}' (offset {offset})")
        await self.provider._run(self.blob.stage_block, block_id=current, data=chunk, length=len(chunk))
        return current

    async def commit(self, session_id: str, parts: List[str], total_size: int) -> StorageItem:
        await self.provider._run(
            self.blob.commit_block_list,
            [BlobBlock(block_id=part) for part in parts],
            content_settings=ContentSettings(content_type=self.mime_type),
        )
        return await self.provider.get_file(self.blob_name)

    async def abort(self, session_id: Optional[str]) -> None:
        # There is no call to drop staged blocks; the service discards
        # uncommitted blocks after seven days and never lists them.
        logging.warning(f"Abandoned uncommitted blocks of Azure blob '{self.blob_name}'")


class AzureBlobProvider(StorageProvider):
    """
    Azure Blob Storage adapter using the deployment's connection string.

    Every user owns the `<user_id>/` name prefix of the container. File ids
    are blob names; folder ids are prefixes ending in "/", kept visible while
    empty by a `.folder` marker blob.
    """

    kind = ProviderKind.AZURE_BLOB
    display_name = "Azure Blob Storage"

    def __init__(self, settings, user_id=None):
        super().__init__(settings, user_id)
        self.container_name = settings.AZURE_STORAGE_CONTAINER
        self.prefix = f"{user_id or 'anonymous'}/"
        self._service = None
        self._container = None

    @classmethod
    def is_configured(cls, settings) -> bool:
        return settings.azure_configured

    @property
    def service(self) -> BlobServiceClient:
        if self._service is None:
            self._service = BlobServiceClient.from_connection_string(
                self.settings.AZURE_STORAGE_CONNECTION_STRING
            )
            logging.info(f"Azure Blob client initialized for container '{self.container_name}'.")
        return self._service

    @property
    def container(self):
        if self._container is None:
            self._container = self.service.get_container_client(self.container_name)
        return self._container

    async def close(self) -> None:
        if self._service is not None:
            self._service.close()
            self._service = None
            self._container = None

    def _translate_error(self, error: Exception) -> StorageError:
        if isinstance(error, ResourceNotFoundError):
            return self._error(NotFoundError, f"Azure blob not found: {error.message}", error)
        if isinstance(error, ResourceExistsError):
            return self._error(ConflictError, f"Azure blob already exists: {error.message}", error)
        if isinstance(error, ClientAuthenticationError):
            return self._auth_error(getattr(error, "error_code", None) or "authentication_failed", error)
        if isinstance(error, (ServiceRequestTimeoutError, ServiceResponseTimeoutError)):
            return self._timeout_error(error)
        if isinstance(error, (ServiceRequestError, ServiceResponseError)):
            return self._error(TransientError, f"Azure is unreachable: {error}", error)
        if isinstance(error, HttpResponseError):
            status = error.status_code or 0
            code = getattr(error, "error_code", None)
            if status == 403:
                return self._auth_error(code or "forbidden", error)
            if code in ("InsufficientAccountPermissions", "AccountIsDisabled"):
                return self._auth_error(code, error)
            if status == 413:
                return self._error(QuotaExceededError, f"Azure rejected the blob size: {error.message}", error)
            if status in (408, 429) or status >= 500:
                return self._error(TransientError, f"Azure is temporarily unavailable: {error.message}", error)
            return self._error(PermanentError, f"Azure error {code}: {error.message}", error)
        return super()._translate_error(error)

    # --- names ---

    def _name(self, item_id: str) -> str:
        if not item_id or not item_id.startswith(self.prefix) or ".." in item_id.split("/"):
            raise NotFoundError(f"Azure blob '{item_id}' not found", provider=self.kind.value)
        return item_id

    def _folder_prefix(self, folder_id: Optional[str]) -> str:
        if not folder_id:
            return self.prefix
        name = self._name(folder_id)
        return name if name.endswith("/") else name + "/"

    def _item(self, blob) -> StorageItem:
        name = posixpath.basename(blob.name)
        content_type = None
        if blob.content_settings is not None:
            content_type = blob.content_settings.content_type
        modified = blob.last_modified or utcnow()
        return StorageItem(
            id=blob.name,
            name=name,
            size=blob.size or 0,
            mime_type=content_type or mimetypes.guess_type(name)[0] or "application/octet-stream",
            path="/" + blob.name[len(self.prefix):],
            created_at=getattr(blob, "creation_time", None) or modified,
            updated_at=modified,
        )

    def _folder(self, prefix: str) -> StorageFolder:
        relative = prefix[len(self.prefix):].rstrip("/")
        parent = posixpath.dirname(relative)
        return StorageFolder(
            id=prefix,
            name=posixpath.basename(relative),
            path="/" + relative,
            parent_id=self.prefix + parent + "/" if parent else self.prefix,
        )

    # --- files ---

    async def upload_file(self, data: bytes, options: UploadOptions) -> StorageItem:
        name = self._folder_prefix(options.folder_id) + posixpath.basename(options.file_name)
        size = len(data)
        if size < self.settings.AZURE_BLOCK_THRESHOLD:
            logging.info(f"Uploading {size} bytes to Azure blob '{name}' (single request)")
            blob = self.container.get_blob_client(name)
            await self._run(
                blob.upload_blob, data, overwrite=options.overwrite,
                content_settings=ContentSettings(content_type=options.mime_type),
            )
            return await self.get_file(name)

        blob = self.container.get_blob_client(name)
        if not options.overwrite and await self._run(blob.exists):
            raise ConflictError(f"Azure blob '{name}' already exists", provider=self.kind.value)
        logging.info(f"Uploading {size} bytes to Azure blob '{name}' (block list)")
        uploader = ChunkedUploader(
            AzureBlockUpload(self, name, options.mime_type), self.kind, name, self.settings.AZURE_BLOCK_SIZE
        )
        return await uploader.upload(data)

    async def download_file(self, file_id: str, byte_range: Optional[ByteRange] = None) -> bytes:
        blob = self.container.get_blob_client(self._name(file_id))
        kwargs = {}
        if byte_range is not None:
            kwargs["offset"] = byte_range.start
            if byte_range.end is not None:
                kwargs["length"] = byte_range.end - byte_range.start + 1
        return await self._run(lambda: blob.download_blob(**kwargs).readall())

    async def delete_file(self, file_id: str) -> None:
        name = self._name(file_id)
        logging.info(f"Deleting Azure blob '{name}'")
        await self._run(self.container.get_blob_client(name).delete_blob)

    async def get_file(self, file_id: str) -> StorageItem:
        name = self._name(file_id)
        if name.endswith("/") or posixpath.basename(name) == FOLDER_MARKER:
            raise NotFoundError(f"'{name}' is a folder", provider=self.kind.value)
        properties = await self._run(self.container.get_blob_client(name).get_blob_properties)
        return self._item(properties)

    def _enumerate(self, prefix: str):
        files, folders = [], []
        for entry in self.container.walk_blobs(name_starts_with=prefix, delimiter="/"):
            if isinstance(entry, BlobPrefix):
                folders.append(self._folder(entry.name))
            elif posixpath.basename(entry.name) != FOLDER_MARKER:
                files.append(self._item(entry))
        return files, folders

    async def list_files(self, folder_id: Optional[str] = None, limit: int = 100, offset: int = 0) -> ListResult:
        files, folders = await self._run(self._enumerate, self._folder_prefix(folder_id))
        return self._paginate(files, folders, limit, offset)

    async def _copy(self, name: str, target: str) -> StorageItem:
        destination = self.container.get_blob_client(target)
        if await self._run(destination.exists):
            raise ConflictError(f"Azure blob '{target}' already exists", provider=self.kind.value)
        source_url = self.container.get_blob_client(name).url
        await self._run(destination.start_copy_from_url, source_url)
        # Same-account copies usually finish at once; larger ones are polled.
        deadline = time.monotonic() + self.timeout
        while True:
            properties = await self._run(destination.get_blob_properties)
            status = properties.copy.status if properties.copy else "success"
            if status != "pending":
                break
            if time.monotonic() >= deadline:
                await self._abort_copy(destination, properties.copy.id)
                raise StorageTimeoutError(
                    f"Azure copy of '{name}' did not finish within {self.timeout}s",
                    provider=self.kind.value,
                )
            await asyncio.sleep(COPY_POLL_SECONDS)
        if status != "success":
            raise PermanentError(
                f"Azure copy of '{name}' ended with status '{status}'", provider=self.kind.value
            )
        return self._item(properties)

    async def _abort_copy(self, destination, copy_id: str) -> None:
        try:
            await self._run(destination.abort_copy, copy_id)
        except StorageError as e:
            logging.warning(f"Could not abort Azure copy '{copy_id}': {e}")

    async def copy_file(self, file_id: str, target_folder_id: Optional[str] = None) -> StorageItem:
        name = self._name(file_id)
        target = self._folder_prefix(target_folder_id) + posixpath.basename(name)
        logging.info(f"Copying Azure blob '{name}' to '{target}'")
        return await self._copy(name, target)

    async def move_file(self, file_id: str, target_folder_id: Optional[str] = None) -> StorageItem:
        name = self._name(file_id)
        target = self._folder_prefix(target_folder_id) + posixpath.basename(name)
        if target == name:
            return await self.get_file(name)
        logging.info(f"Moving Azure blob '{name}' to '{target}'")
        item = await self._copy(name, target)
        await self._run(self.container.get_blob_client(name).delete_blob)
        return item

    # --- folders ---

    async def create_folder(self, name: str, parent_id: Optional[str] = None) -> StorageFolder:
        prefix = self._folder_prefix(parent_id) + posixpath.basename(name.strip("/")) + "/"
        marker = self.container.get_blob_client(prefix + FOLDER_MARKER)
        await self._run(marker.upload_blob, b"", overwrite=False)
        logging.info(f"Created Azure folder marker '{prefix}{FOLDER_MARKER}'")
        return self._folder(prefix)

    def _folder_exists(self, prefix: str) -> bool:
        return next(iter(self.container.list_blobs(name_starts_with=prefix)), None) is not None

    async def get_folder(self, folder_id: str) -> StorageFolder:
        prefix = self._folder_prefix(folder_id)
        if prefix == self.prefix or not await self._run(self._folder_exists, prefix):
            raise NotFoundError(f"Azure folder '{folder_id}' not found", provider=self.kind.value)
        return self._folder(prefix)

    def _delete_prefix(self, prefix: str) -> int:
        names = [blob.name for blob in self.container.list_blobs(name_starts_with=prefix)]
        if not names:
            raise NotFoundError(f"Azure folder '{prefix}' not found", provider=self.kind.value)
        for start in range(0, len(names), 256):
            self.container.delete_blobs(*names[start:start + 256])
        return len(names)

    async def delete_folder(self, folder_id: str) -> None:
        prefix = self._folder_prefix(folder_id)
        if prefix == self.prefix:
            raise PermanentError("The root folder cannot be deleted", provider=self.kind.value)
        count = await self._run(self._delete_prefix, prefix)
        logging.info(f"Deleted Azure folder '{prefix}' ({count} blobs)")

    # --- sharing, search, quota, previews ---

    def _sas_url(self, name: str, expires_at: datetime, allow_edit: bool = False) -> str:
        credential = self.service.credential
        account_key = getattr(credential, "account_key", None)
        if not account_key:
            raise PermanentError(
                "Azure share links need an account key in the connection string", provider=self.kind.value
            )
        sas = generate_blob_sas(
            account_name=self.service.account_name,
            container_name=self.container_name,
            blob_name=name,
            account_key=account_key,
            permission=BlobSasPermissions(read=True, write=allow_edit),
            expiry=expires_at,
        )
        return f"{self.container.get_blob_client(name).url}?{sas}"

    async def create_share_link(self, file_id: str, options: Optional[ShareOptions] = None) -> ShareLink:
        """Shares through a read-only SAS URL, which cannot be revoked individually."""
        options = options or ShareOptions()
        name = self._name(file_id)
        await self.get_file(name)
        if options.password:
            logging.warning("Azure SAS links ignore passwords.")
        expires_at = options.expires_at or datetime.now(timezone.utc) + timedelta(seconds=DEFAULT_SAS_SECONDS)
        url = await self._run(self._sas_url, name, expires_at, options.allow_edit)
        return ShareLink(url=url, share_id=uuid.uuid4().hex, expires_at=expires_at)

    async def revoke_share_link(self, file_id: str, share_id: str) -> None:
        raise self._unsupported("revoking SAS links")

    def _search(self, query: str, options: SearchOptions) -> List[StorageItem]:
        needle = query.lower()
        results = []
        for blob in self.container.list_blobs(name_starts_with=self._folder_prefix(options.folder_id)):
            base = posixpath.basename(blob.name)
            if base == FOLDER_MARKER or needle not in base.lower():
                continue
            item = self._item(blob)
            if options.mime_type and item.mime_type != options.mime_type:
                continue
            results.append(item)
            if len(results) >= options.limit:
                break
        return results

    async def search_files(self, query: str, options: Optional[SearchOptions] = None) -> List[StorageItem]:
        return await self._run(self._search, query, options or SearchOptions())

    def _used_bytes(self) -> int:
        return sum(blob.size or 0 for blob in self.container.list_blobs(name_starts_with=self.prefix))

    async def get_quota(self) -> Quota:
        """Azure has no hard limit; only usage under the user's prefix is reported."""
        return Quota.unlimited(used=await self._run(self._used_bytes))

    async def get_preview_url(self, file_id: str) -> Optional[str]:
        try:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=DEFAULT_SAS_SECONDS)
            return await self._run(self._sas_url, self._name(file_id), expires_at)
        except StorageError as e:
            logging.warning(f"No preview URL for Azure blob '{file_id}': {e}")
            return None
