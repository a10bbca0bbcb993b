# s3.py
from datetime import datetime, timedelta, timezone
import logging
import mimetypes
import posixpath
from typing import Any, Dict, List, Optional
import uuid

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    NoCredentialsError,
    ReadTimeoutError,
)

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

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchUpload", "NoSuchBucket"}
AUTH_CODES = {"403", "AccessDenied", "InvalidAccessKeyId", "SignatureDoesNotMatch", "ExpiredToken"}
TRANSIENT_CODES = {"SlowDown", "RequestTimeout", "InternalError", "ServiceUnavailable", "Throttling"}
# Presigned URLs signed with IAM user keys are valid for at most seven days.
MAX_PRESIGN_SECONDS = 7 * 24 * 3600
DEFAULT_PRESIGN_SECONDS = 3600


class S3MultipartUpload(ChunkProtocol):
    """Multipart upload glue: parts carry numbers, so they may be sent concurrently."""

    concurrent = True

    def __init__(self, provider: "S3Provider", key: str, mime_type: str):
        self.provider = provider
        self.key = key
        self.mime_type = mime_type

    async def open(self) -> str:
        response = await self.provider._run(
            self.provider.client.create_multipart_upload,
            Bucket=self.provider.bucket, Key=self.key, ContentType=self.mime_type,
        )
        return response["UploadId"]

    async def append(self, session_id: str, index: int, offset: int, chunk: bytes) -> Dict[str, Any]:
        part_number = index + 1
        logging.info(f"Uploading part {part_number} of '{self.key}' (offset {offset})")
        response = await self.provider._run(
            self.provider.client.upload_part,
            Bucket=self.provider.bucket, Key=self.key, UploadId=session_id,
            PartNumber=part_number, Body=chunk,
        )
        return {"ETag": response["ETag"], "PartNumber": part_number}

    async def commit(self, session_id: str, parts: List[Dict[str, Any]], total_size: int) -> StorageItem:
        await self.provider._run(
            self.provider.client.complete_multipart_upload,
            Bucket=self.provider.bucket, Key=self.key, UploadId=session_id,
            MultipartUpload={"Parts": sorted(parts, key=lambda p: p["PartNumber"])},
        )
        return await self.provider.get_file(self.key)

    async def abort(self, session_id: Optional[str]) -> None:
        await self.provider._run(
            self.provider.client.abort_multipart_upload,
            Bucket=self.provider.bucket, Key=self.key, UploadId=session_id,
        )


class S3Provider(StorageProvider):
    """
    Amazon S3 adapter working with the deployment's access keys.

    Every user owns the `<user_id>/` key prefix of the bucket. File ids are
    full object keys; folder ids are prefixes ending in "/", made visible
    while empty by a zero-byte marker object named like the prefix.
    """

    kind = ProviderKind.S3
    display_name = "Amazon S3"

    def __init__(self, settings, user_id=None):
        super().__init__(settings, user_id)
        self.bucket = settings.AWS_S3_BUCKET
        self.prefix = f"{user_id or 'anonymous'}/"
        self._client = None

    @classmethod
    def is_configured(cls, settings) -> bool:
        return settings.s3_configured

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                aws_access_key_id=self.settings.AWS_ACCESS_KEY_ID,
                aws_secret_access_key=self.settings.AWS_SECRET_ACCESS_KEY,
                region_name=self.settings.AWS_REGION,
                endpoint_url=self.settings.AWS_ENDPOINT_URL,
            )
            logging.info(f"S3 client initialized for bucket '{self.bucket}'.")
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _translate_error(self, error: Exception) -> StorageError:
        if isinstance(error, ClientError):
            details = error.response.get("Error", {})
            code = str(details.get("Code", ""))
            status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
            message = details.get("Message") or str(error)
            if code in NOT_FOUND_CODES or status == 404:
                return self._error(NotFoundError, f"S3 object not found: {message}", error)
            if code in AUTH_CODES or status == 403:
                return self._auth_error(code or "access_denied", error)
            if code == "EntityTooLarge":
                return self._error(QuotaExceededError, f"S3 rejected the object size: {message}", error)
            if code in TRANSIENT_CODES or status >= 500:
                return self._error(TransientError, f"S3 is temporarily unavailable: {message}", error)
            return self._error(PermanentError, f"S3 error {code}: {message}", error)
        if isinstance(error, NoCredentialsError):
            return self._auth_error("no_credentials", error)
        if isinstance(error, (ReadTimeoutError, ConnectTimeoutError)):
            return self._timeout_error(error)
        if isinstance(error, BotoCoreError):
            return self._error(TransientError, f"S3 connection failed: {error}", error)
        return super()._translate_error(error)

    # --- keys ---

    def _key(self, item_id: str) -> str:
        if not item_id or not item_id.startswith(self.prefix) or ".." in item_id.split("/"):
            raise NotFoundError(f"S3 object '{item_id}' not found", provider=self.kind.value)
        return item_id

    def _folder_prefix(self, folder_id: Optional[str]) -> str:
        if not folder_id:
            return self.prefix
        key = self._key(folder_id)
        return key if key.endswith("/") else key + "/"

    def _item(self, key: str, size: int, modified: Optional[datetime], mime_type: Optional[str] = None) -> StorageItem:
        modified = modified or utcnow()
        name = posixpath.basename(key)
        return StorageItem(
            id=key,
            name=name,
            size=size,
            mime_type=mime_type or mimetypes.guess_type(name)[0] or "application/octet-stream",
            path="/" + key[len(self.prefix):],
            created_at=modified,
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

    def _exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in NOT_FOUND_CODES:
                return False
            raise

    def _list(self, prefix: str, delimiter: Optional[str] = "/"):
        """Yields every page of a listing, following continuation tokens."""
        params = {"Bucket": self.bucket, "Prefix": prefix}
        if delimiter:
            params["Delimiter"] = delimiter
        while True:
            page = self.client.list_objects_v2(**params)
            yield page
            if not page.get("IsTruncated"):
                break
            params["ContinuationToken"] = page["NextContinuationToken"]

    # --- files ---

    def _put(self, key: str, data: bytes, options: UploadOptions) -> StorageItem:
        if not options.overwrite and self._exists(key):
            raise ConflictError(f"S3 object '{key}' already exists", provider=self.kind.value)
        self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=options.mime_type)
        return self._item(key, len(data), utcnow(), options.mime_type)

    async def upload_file(self, data: bytes, options: UploadOptions) -> StorageItem:
        key = self._folder_prefix(options.folder_id) + posixpath.basename(options.file_name)
        size = len(data)
        if size < self.settings.S3_MULTIPART_THRESHOLD:
            logging.info(f"Uploading {size} bytes to s3://{self.bucket}/{key} (single request)")
            return await self._run(self._put, key, data, options)

        if not options.overwrite and await self._run(self._exists, key):
            raise ConflictError(f"S3 object '{key}' already exists", provider=self.kind.value)
        logging.info(f"Uploading {size} bytes to s3://{self.bucket}/{key} (multipart)")
        uploader = ChunkedUploader(
            S3MultipartUpload(self, key, options.mime_type),
            self.kind,
            key,
            self.settings.S3_PART_SIZE,
            max_concurrency=self.settings.S3_MAX_CONCURRENT_PARTS,
        )
        return await uploader.upload(data)

    def _get(self, key: str, byte_range: Optional[ByteRange]) -> bytes:
        params = {"Bucket": self.bucket, "Key": key}
        if byte_range is not None:
            params["Range"] = byte_range.header()
        response = self.client.get_object(**params)
        body = response["Body"]
        try:
            return body.read()
        finally:
            body.close()

    async def download_file(self, file_id: str, byte_range: Optional[ByteRange] = None) -> bytes:
        return await self._run(self._get, self._key(file_id), byte_range)

    def _delete(self, key: str) -> None:
        # S3 deletes of missing keys succeed silently.
        self.client.head_object(Bucket=self.bucket, Key=key)
        self.client.delete_object(Bucket=self.bucket, Key=key)

    async def delete_file(self, file_id: str) -> None:
        key = self._key(file_id)
        logging.info(f"Deleting s3://{self.bucket}/{key}")
        await self._run(self._delete, key)

    def _head(self, key: str) -> StorageItem:
        response = self.client.head_object(Bucket=self.bucket, Key=key)
        return self._item(key, response.get("ContentLength", 0), response.get("LastModified"), response.get("ContentType"))

    async def get_file(self, file_id: str) -> StorageItem:
        key = self._key(file_id)
        if key.endswith("/"):
            raise NotFoundError(f"'{key}' is a folder", provider=self.kind.value)
        return await self._run(self._head, key)

    def _enumerate(self, prefix: str):
        files, folders = [], []
        for page in self._list(prefix):
            for common in page.get("CommonPrefixes", []):
                folders.append(self._folder(common["Prefix"]))
            for obj in page.get("Contents", []):
                if obj["Key"] == prefix:
                    continue
                files.append(self._item(obj["Key"], obj.get("Size", 0), obj.get("LastModified")))
        return files, folders

    async def list_files(self, folder_id: Optional[str] = None, limit: int = 100, offset: int = 0) -> ListResult:
        files, folders = await self._run(self._enumerate, self._folder_prefix(folder_id))
        return self._paginate(files, folders, limit, offset)

    def _copy(self, key: str, target: str) -> StorageItem:
        if self._exists(target):
            raise ConflictError(f"S3 object '{target}' already exists", provider=self.kind.value)
        self.client.copy_object(Bucket=self.bucket, Key=target, CopySource={"Bucket": self.bucket, "Key": key})
        return self._head(target)

    async def copy_file(self, file_id: str, target_folder_id: Optional[str] = None) -> StorageItem:
        key = self._key(file_id)
        target = self._folder_prefix(target_folder_id) + posixpath.basename(key)
        logging.info(f"Copying s3://{self.bucket}/{key} to {target}")
        return await self._run(self._copy, key, target)

    async def move_file(self, file_id: str, target_folder_id: Optional[str] = None) -> StorageItem:
        key = self._key(file_id)
        target = self._folder_prefix(target_folder_id) + posixpath.basename(key)
        if target == key:
            return await self.get_file(key)
        logging.info(f"Moving s3://{self.bucket}/{key} to {target}")
        item = await self._run(self._copy, key, target)
        await self._run(self.client.delete_object, Bucket=self.bucket, Key=key)
        return item

    # --- folders ---

    async def create_folder(self, name: str, parent_id: Optional[str] = None) -> StorageFolder:
        prefix = self._folder_prefix(parent_id) + posixpath.basename(name.strip("/")) + "/"
        if await self._run(self._exists, prefix):
            raise ConflictError(f"S3 folder '{prefix}' already exists", provider=self.kind.value)
        await self._run(self.client.put_object, Bucket=self.bucket, Key=prefix, Body=b"")
        logging.info(f"Created S3 folder marker '{prefix}'")
        return self._folder(prefix)

    def _folder_exists(self, prefix: str) -> bool:
        page = self.client.list_objects_v2(Bucket=self.bucket, Prefix=prefix, MaxKeys=1)
        return bool(page.get("Contents") or page.get("CommonPrefixes"))

    async def get_folder(self, folder_id: str) -> StorageFolder:
        prefix = self._folder_prefix(folder_id)
        if prefix == self.prefix or not await self._run(self._folder_exists, prefix):
            raise NotFoundError(f"S3 folder '{folder_id}' not found", provider=self.kind.value)
        return self._folder(prefix)

    def _delete_prefix(self, prefix: str) -> int:
        keys = [obj["Key"] for page in self._list(prefix, delimiter=None) for obj in page.get("Contents", [])]
        if not keys:
            raise NotFoundError(f"S3 folder '{prefix}' not found", provider=self.kind.value)
        for start in range(0, len(keys), 1000):
            batch = [{"Key": key} for key in keys[start:start + 1000]]
            response = self.client.delete_objects(Bucket=self.bucket, Delete={"Objects": batch, "Quiet": True})
            errors = response.get("Errors", [])
            if errors:
                raise PermanentError(
                    f"S3 could not delete {len(errors)} objects under '{prefix}': {errors[0].get('Message')}",
                    provider=self.kind.value,
                )
        return len(keys)

    async def delete_folder(self, folder_id: str) -> None:
        prefix = self._folder_prefix(folder_id)
        if prefix == self.prefix:
            raise PermanentError("The root folder cannot be deleted", provider=self.kind.value)
        count = await self._run(self._delete_prefix, prefix)
        logging.info(f"Deleted S3 folder '{prefix}' ({count} objects)")

    # --- sharing, search, quota, previews ---

    async def create_share_link(self, file_id: str, options: Optional[ShareOptions] = None) -> ShareLink:
        """Shares through a presigned GET URL; S3 cannot revoke one before it expires."""
        options = options or ShareOptions()
        key = self._key(file_id)
        await self.get_file(key)
        if options.password or options.allow_edit:
            logging.warning("S3 presigned links ignore password and edit permissions.")

        seconds = DEFAULT_PRESIGN_SECONDS
        if options.expires_at is not None:
            seconds = int((options.expires_at - datetime.now(timezone.utc)).total_seconds())
            if seconds <= 0:
                raise PermanentError("Share link expiry lies in the past", provider=self.kind.value)
            if seconds > MAX_PRESIGN_SECONDS:
                logging.warning("S3 presigned links expire after at most seven days; capping expiry.")
                seconds = MAX_PRESIGN_SECONDS
        url = await self._run(
            self.client.generate_presigned_url,
            "get_object", Params={"Bucket": self.bucket, "Key": key}, ExpiresIn=seconds,
        )
        return ShareLink(
            url=url, share_id=uuid.uuid4().hex, expires_at=utcnow() + timedelta(seconds=seconds)
        )

    async def revoke_share_link(self, file_id: str, share_id: str) -> None:
        raise self._unsupported("revoking presigned URLs")

    def _search(self, query: str, options: SearchOptions) -> List[StorageItem]:
        needle = query.lower()
        results = []
        for page in self._list(self._folder_prefix(options.folder_id), delimiter=None):
            for obj in page.get("Contents", []):
                key = obj["Key"]
                if key.endswith("/") or needle not in posixpath.basename(key).lower():
                    continue
                item = self._item(key, obj.get("Size", 0), obj.get("LastModified"))
                if options.mime_type and item.mime_type != options.mime_type:
                    continue
                results.append(item)
                if len(results) >= options.limit:
                    return results
        return results

    async def search_files(self, query: str, options: Optional[SearchOptions] = None) -> List[StorageItem]:
        return await self._run(self._search, query, options or SearchOptions())

    def _used_bytes(self) -> int:
        return sum(
            obj.get("Size", 0)
            for page in self._list(self.prefix, delimiter=None)
            for obj in page.get("Contents", [])
        )

    async def get_quota(self) -> Quota:
        """S3 has no hard limit; only usage under the user's prefix is reported."""
        return Quota.unlimited(used=await self._run(self._used_bytes))

    async def get_preview_url(self, file_id: str) -> Optional[str]:
        try:
            return await self._run(
                self.client.generate_presigned_url,
                "get_object", Params={"Bucket": self.bucket, "Key": self._key(file_id)},
                ExpiresIn=DEFAULT_PRESIGN_SECONDS,
            )
        except StorageError as e:
            logging.warning(f"No preview URL for S3 object '{file_id}': {e}")
            return None
