# local.py
from datetime import datetime, timezone
import io
import logging
import mimetypes
import os
from pathlib import Path, PurePosixPath
import shutil
import tempfile
from typing import List, Optional, Tuple
import errno
import urllib.parse
import uuid

from PIL import Image

from .exceptions import ConflictError, NotFoundError, PermanentError, QuotaExceededError, StorageError
from .storage.base import StorageProvider
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
)

TEMP_PREFIX = ".upload-"
DISK_FULL_ERRNOS = (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC))


def _timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _guess_mime(name: str) -> str:
    return mimetypes.guess_type(name)[0] or "application/octet-stream"


class LocalProvider(StorageProvider):
    """
    Stores files on the local filesystem, one real file per item under
    `LOCAL_STORAGE_ROOT/<user_id>`. Item and folder ids are paths relative to
    the user's directory; the root folder is "".

    Always available and never needs credentials.
    """

    kind = ProviderKind.LOCAL
    display_name = "Local Storage"

    def __init__(self, settings, user_id=None):
        super().__init__(settings, user_id)
        self.root = (Path(settings.LOCAL_STORAGE_ROOT) / (user_id or "anonymous")).resolve()

    # --- path handling ---

    def _path(self, item_id: Optional[str]) -> Path:
        """Maps an id onto the user's directory; ids escaping it do not exist."""
        relative = PurePosixPath(item_id or "")
        if relative.is_absolute() or ".." in relative.parts:
            raise NotFoundError(f"Item '{item_id}' not found", provider=self.kind.value)
        return self.root.joinpath(*relative.parts)

    def _id(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    def _file_path(self, file_id: str) -> Path:
        path = self._path(file_id)
        if not file_id or not path.is_file():
            raise NotFoundError(f"File '{file_id}' not found", provider=self.kind.value)
        return path

    def _folder_path(self, folder_id: Optional[str]) -> Path:
        path = self._path(folder_id)
        if not folder_id:
            path.mkdir(parents=True, exist_ok=True)
        elif not path.is_dir():
            raise NotFoundError(f"Folder '{folder_id}' not found", provider=self.kind.value)
        return path

    @staticmethod
    def _publish(staged: str, folder: Path, name: str) -> Path:
        """
        Links `staged` into `folder` under `name`, or `name (1).ext`,
        `name (2).ext`... if taken, then removes `staged`.
        """
        stem, suffix = os.path.splitext(name)
        candidate = folder / name
        counter = 1
        while True:
            try:
                # link() never replaces an existing name.
                os.link(staged, candidate)
                break
            except FileExistsError:
                candidate = folder / f"{stem} ({counter}){suffix}"
                counter += 1
        os.remove(staged)
        return candidate

    def _item(self, path: Path) -> StorageItem:
        stat = path.stat()
        item_id = self._id(path)
        return StorageItem(
            id=item_id,
            name=path.name,
            size=stat.st_size,
            mime_type=_guess_mime(path.name),
            path="/" + item_id,
            url=self._download_url(item_id),
            created_at=_timestamp(stat.st_ctime),
            updated_at=_timestamp(stat.st_mtime),
        )

    def _folder(self, path: Path) -> StorageFolder:
        stat = path.stat()
        folder_id = self._id(path)
        parent = path.parent
        return StorageFolder(
            id=folder_id,
            name=path.name,
            path="/" + folder_id,
            parent_id="" if parent == self.root else self._id(parent),
            created_at=_timestamp(stat.st_ctime),
            updated_at=_timestamp(stat.st_mtime),
        )

    def _download_url(self, item_id: str) -> str:
        base = self.settings.PUBLIC_BASE_URL.rstrip("/")
        return f"{base}/api/files/{urllib.parse.quote(item_id, safe='')}/download"

    def _translate_error(self, error: Exception) -> StorageError:
        if isinstance(error, FileNotFoundError):
            return self._error(NotFoundError, f"Not found: {error.filename}", error)
        if isinstance(error, FileExistsError):
            return self._error(ConflictError, f"Already exists: {error.filename}", error)
        if isinstance(error, OSError) and error.errno in DISK_FULL_ERRNOS:
            return self._error(QuotaExceededError, f"Disk is full: {error}", error)
        if isinstance(error, PermissionError):
            return self._error(PermanentError, f"Permission denied: {error.filename}", error)
        return super()._translate_error(error)

    # --- authentication ---

    async def refresh_access_token(self):
        raise self._unsupported("token refresh")

    # --- files ---

    def _used_bytes(self) -> int:
        total = 0
        for dirpath, _, filenames in os.walk(self.root):
            for filename in filenames:
                try:
                    total += os.path.getsize(os.path.join(dirpath, filename))
                except OSError:
                    continue
        return total

    def _write(self, data: bytes, options: UploadOptions) -> StorageItem:
        folder = self._folder_path(options.folder_id)
        name = os.path.basename(options.file_name)
        if not name or name in (".", ".."):
            raise PermanentError(f"Invalid file name '{options.file_name}'", provider=self.kind.value)

        if self._used_bytes() + len(data) > self.settings.LOCAL_QUOTA_BYTES:
            raise QuotaExceededError(
                f"Storing {len(data)} bytes would exceed the local quota", provider=self.kind.value
            )

        target = folder / name
        if options.overwrite and target.is_dir():
            raise ConflictError(f"A folder named '{name}' already exists", provider=self.kind.value)

        # Staged next to the target and moved into place, so readers never see a partial file.
        fd, tmp_path = tempfile.mkstemp(dir=folder, prefix=TEMP_PREFIX)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            if options.overwrite:
                os.replace(tmp_path, target)
            else:
                target = self._publish(tmp_path, folder, name)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        return self._item(target)

    async def upload_file(self, data: bytes, options: UploadOptions) -> StorageItem:
        logging.info(f"Writing {len(data)} bytes to local storage: '{options.file_name}'")
        return await self._run(self._write, data, options)

    def _read(self, file_id: str, byte_range: Optional[ByteRange]) -> bytes:
        path = self._file_path(file_id)
        with open(path, "rb") as f:
            if byte_range is None:
                return f.read()
            f.seek(byte_range.start)
            if byte_range.end is None:
                return f.read()
            return f.read(max(0, byte_range.end - byte_range.start + 1))

    async def download_file(self, file_id: str, byte_range: Optional[ByteRange] = None) -> bytes:
        return await self._run(self._read, file_id, byte_range)

    def _unlink(self, file_id: str) -> None:
        self._file_path(file_id).unlink()

    async def delete_file(self, file_id: str) -> None:
        logging.info(f"Deleting local file '{file_id}'")
        await self._run(self._unlink, file_id)

    async def get_file(self, file_id: str) -> StorageItem:
        return await self._run(lambda: self._item(self._file_path(file_id)))

    def _entries(self, folder: Path) -> Tuple[List[StorageFolder], List[StorageItem]]:
        folders, files = [], []
        for entry in sorted(folder.iterdir(), key=lambda p: p.name.lower()):
            if entry.name.startswith(TEMP_PREFIX):
                continue
            if entry.is_dir():
                folders.append(self._folder(entry))
            elif entry.is_file():
                files.append(self._item(entry))
        return folders, files

    async def list_files(self, folder_id: Optional[str] = None, limit: int = 100, offset: int = 0) -> ListResult:
        folders, files = await self._run(lambda: self._entries(self._folder_path(folder_id)))
        return self._paginate(files, folders, limit, offset)

    def _relocate(self, file_id: str, target_folder_id: Optional[str], copy: bool) -> StorageItem:
        source = self._file_path(file_id)
        folder = self._folder_path(target_folder_id)
        if not copy:
            if folder.resolve() == source.parent.resolve():
                return self._item(source)
            return self._item(self._publish(str(source), folder, source.name))
        fd, tmp_path = tempfile.mkstemp(dir=folder, prefix=TEMP_PREFIX)
        os.close(fd)
        try:
            shutil.copy2(source, tmp_path)
            target = self._publish(tmp_path, folder, source.name)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        return self._item(target)

    async def move_file(self, file_id: str, target_folder_id: Optional[str] = None) -> StorageItem:
        logging.info(f"Moving local file '{file_id}' to folder '{target_folder_id or '/'}'")
        return await self._run(self._relocate, file_id, target_folder_id, False)

    async def copy_file(self, file_id: str, target_folder_id: Optional[str] = None) -> StorageItem:
        logging.info(f"Copying local file '{file_id}' to folder '{target_folder_id or '/'}'")
        return await self._run(self._relocate, file_id, target_folder_id, True)

    # --- folders ---

    def _mkdir(self, name: str, parent_id: Optional[str]) -> StorageFolder:
        parent = self._folder_path(parent_id)
        name = os.path.basename(name)
        if not name or name in (".", ".."):
            raise PermanentError(f"Invalid folder name '{name}'", provider=self.kind.value)
        path = parent / name
        path.mkdir()
        return self._folder(path)

    async def create_folder(self, name: str, parent_id: Optional[str] = None) -> StorageFolder:
        return await self._run(self._mkdir, name, parent_id)

    def _rmdir(self, folder_id: str) -> None:
        if not folder_id:
            raise PermanentError("The root folder cannot be deleted", provider=self.kind.value)
        shutil.rmtree(self._folder_path(folder_id))

    async def delete_folder(self, folder_id: str) -> None:
        logging.info(f"Deleting local folder '{folder_id}'")
        await self._run(self._rmdir, folder_id)

    async def get_folder(self, folder_id: str) -> StorageFolder:
        if not folder_id:
            raise NotFoundError("The root folder has no metadata", provider=self.kind.value)
        return await self._run(lambda: self._folder(self._folder_path(folder_id)))

    # --- sharing, search, quota, previews ---

    async def create_share_link(self, file_id: str, options: Optional[ShareOptions] = None) -> ShareLink:
        """
        Local files are shared through the authenticated download route; a
        password or edit permission cannot be enforced there.
        """
        options = options or ShareOptions()
        item = await self.get_file(file_id)
        if options.password or options.allow_edit:
            logging.warning("Local share links ignore password and edit permissions.")
        return ShareLink(url=item.url, share_id=uuid.uuid4().hex, expires_at=options.expires_at)

    async def revoke_share_link(self, file_id: str, share_id: str) -> None:
        await self.get_file(file_id)
        logging.info(f"Revoked local share '{share_id}' of '{file_id}' (download route stays authenticated)")

    def _search(self, query: str, options: SearchOptions) -> List[StorageItem]:
        folder = self._folder_path(options.folder_id)
        needle = query.lower()
        results = []
        for dirpath, dirnames, filenames in os.walk(folder):
            dirnames.sort()
            for filename in sorted(filenames):
                if filename.startswith(TEMP_PREFIX) or needle not in filename.lower():
                    continue
                if options.mime_type and _guess_mime(filename) != options.mime_type:
                    continue
                results.append(self._item(Path(dirpath) / filename))
                if len(results) >= options.limit:
                    return results
        return results

    async def search_files(self, query: str, options: Optional[SearchOptions] = None) -> List[StorageItem]:
        return await self._run(self._search, query, options or SearchOptions())

    async def get_quota(self) -> Quota:
        self.root.mkdir(parents=True, exist_ok=True)
        used = await self._run(self._used_bytes)
        total = self.settings.LOCAL_QUOTA_BYTES
        return Quota(total=total, used=used, available=max(0, total - used))

    def _render_thumbnail(self, file_id: str, size: int) -> Optional[bytes]:
        path = self._file_path(file_id)
        if not _guess_mime(path.name).startswith("image/"):
            return None
        with Image.open(path) as image:
            image.thumbnail((size, size))
            if image.mode not in ("RGB", "RGBA", "L"):
                image = image.convert("RGBA")
            buffer = io.BytesIO()
            image.save(buffer, format="PNG")
            return buffer.getvalue()

    async def get_thumbnail(self, file_id: str, size: int = 256) -> Optional[bytes]:
        try:
            return await self._run(self._render_thumbnail, file_id, size)
        except StorageError as e:
            logging.warning(f"No thumbnail for local file '{file_id}': {e}")
            return None

    async def get_preview_url(self, file_id: str) -> Optional[str]:
        try:
            return (await self.get_file(file_id)).url
        except StorageError as e:
            logging.warning(f"No preview for local file '{file_id}': {e}")
            return None
