# storage/base.py
from abc import ABC, abstractmethod
import asyncio
import logging
from typing import Any, Callable, List, Optional

from ..config import Settings
from ..exceptions import (
    AuthError,
    PermanentError,
    StorageError,
    StorageTimeoutError,
    TransientError,
    UnsupportedOperationError,
)
from .batch import run_batch
from .dto import (
    BatchResult,
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


class StorageProvider(ABC):
    """
    Abstract base class for a storage backend.
    Defines the common interface that all specific adapters
    (e.g., local disk, S3, Dropbox, Google Drive) must implement.

    An adapter instance belongs to one user. Construction must stay cheap and
    must not contact the backend; OAuth adapters build their SDK client in
    `authenticate`.
    """

    kind: ProviderKind
    display_name: str
    # True for OAuth backends, which need a per-user registration to work.
    requires_user_credentials: bool = False

    def __init__(self, settings: Settings, user_id: Optional[str] = None):
        self.settings = settings
        self.user_id = user_id
        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self.timeout = settings.REQUEST_TIMEOUT_SECONDS

    @classmethod
    def is_configured(cls, settings: Settings) -> bool:
        """Whether the deployment supplies the credentials this backend needs."""
        return True

    # --- backend call plumbing ---

    async def _run(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Runs a blocking backend call in a worker thread under the request
        deadline and translates whatever it raises into a StorageError.
        """
        name = getattr(func, "__name__", repr(func))
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs), timeout=self.timeout
            )
        except StorageError:
            raise
        except asyncio.TimeoutError as e:
            logging.error(f"{self.display_name}: '{name}' timed out after {self.timeout}s")
            raise StorageTimeoutError(
                f"{self.display_name} call '{name}' timed out after {self.timeout}s",
                provider=self.kind.value,
                cause=e,
            ) from e
        except Exception as e:
            error = self._translate_error(e)
            logging.error(f"{self.display_name}: '{name}' failed: {error}")
            raise error from e

    def _translate_error(self, error: Exception) -> StorageError:
        """Maps a backend-native exception into the storage error taxonomy."""
        # Socket timeouts are OSErrors too; they must not read as transient.
        if isinstance(error, TimeoutError):
            return self._timeout_error(error)
        if isinstance(error, (ConnectionError, OSError)):
            return self._error(TransientError, f"{self.display_name} is unreachable: {error}", error)
        return self._error(PermanentError, f"{self.display_name} error: {error}", error)

    def _timeout_error(self, error: BaseException) -> StorageTimeoutError:
        return self._error(
            StorageTimeoutError, f"{self.display_name} did not answer within {self.timeout}s: {error}", error
        )

    def _error(self, error_cls, message: str, cause: Optional[BaseException] = None, **kwargs) -> StorageError:
        return error_cls(message, provider=self.kind.value, cause=cause, **kwargs)

    def _auth_error(self, reason: str, cause: Optional[BaseException] = None) -> AuthError:
        return AuthError(
            reason, f"{self.display_name} authentication failed: {reason}",
            provider=self.kind.value, cause=cause,
        )

    def _unsupported(self, operation: str) -> UnsupportedOperationError:
        return UnsupportedOperationError(
            f"{self.display_name} does not support {operation}", provider=self.kind.value
        )

    @staticmethod
    def _paginate(
        files: List[StorageItem], folders: List[StorageFolder], limit: int, offset: int
    ) -> ListResult:
        """Slices an enumerated folder; folders are listed before files."""
        entries: List[Any] = list(folders) + list(files)
        window = entries[offset:offset + limit] if limit is not None else entries[offset:]
        return ListResult(
            files=[e for e in window if isinstance(e, StorageItem)],
            folders=[e for e in window if isinstance(e, StorageFolder)],
            total=len(entries),
        )

    # --- authentication ---

    async def authenticate(self, access_token: Optional[str], refresh_token: Optional[str] = None) -> None:
        """
        Binds credentials into the adapter. Calling it again with the same
        tokens is harmless.

        :param access_token: The access token issued by the backend.
        :param refresh_token: The refresh token, if the backend issued one.
        :raises AuthError: if the backend rejects the token immediately.
        """
        self.access_token = access_token
        self.refresh_token = refresh_token

    async def refresh_access_token(self) -> OAuthTokens:
        """
        Exchanges the stored refresh token for a new access token and binds it.

        :return: The new tokens; `refresh_token` is set when the backend rotated it.
        :raises AuthError: with reason "no_refresh_token" if none was stored.
        """
        raise self._auth_error("no_refresh_token")

    def get_auth_url(self, state: Optional[str] = None) -> str:
        """Builds the backend's OAuth consent URL."""
        raise self._unsupported("OAuth authorization")

    async def handle_callback(self, code: str, state: Optional[str] = None) -> OAuthTokens:
        """Exchanges an OAuth authorization code for tokens. Nothing is persisted."""
        raise self._unsupported("OAuth authorization")

    # --- files ---

    @abstractmethod
    async def upload_file(self, data: bytes, options: UploadOptions) -> StorageItem:
        """
        Uploads a payload, switching to the backend's chunked protocol above
        its size threshold.

        :param data: The file content.
        :param options: Name, mime type, destination folder and overwrite flag.
        :return: The created item; never a partially uploaded one.
        """
        pass

    @abstractmethod
    async def download_file(self, file_id: str, byte_range: Optional[ByteRange] = None) -> bytes:
        """
        Downloads a file, or the requested inclusive byte range of it.

        :param file_id: The backend-native id of the file.
        :param byte_range: Optional range to read.
        """
        pass

    @abstractmethod
    async def delete_file(self, file_id: str) -> None:
        pass

    @abstractmethod
    async def get_file(self, file_id: str) -> StorageItem:
        pass

    @abstractmethod
    async def list_files(
        self, folder_id: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> ListResult:
        """
        Lists the direct children of a folder.

        :param folder_id: The folder to list; the user's root when omitted.
        :return: A page of files and folders plus the folder's total entry count.
        """
        pass

    @abstractmethod
    async def move_file(self, file_id: str, target_folder_id: Optional[str] = None) -> StorageItem:
        pass

    @abstractmethod
    async def copy_file(self, file_id: str, target_folder_id: Optional[str] = None) -> StorageItem:
        pass

    # --- folders ---

    @abstractmethod
    async def create_folder(self, name: str, parent_id: Optional[str] = None) -> StorageFolder:
        pass

    @abstractmethod
    async def delete_folder(self, folder_id: str) -> None:
        pass

    @abstractmethod
    async def get_folder(self, folder_id: str) -> StorageFolder:
        pass

    # --- sharing, search, quota, previews ---

    @abstractmethod
    async def create_share_link(self, file_id: str, options: Optional[ShareOptions] = None) -> ShareLink:
        """
        Issues a link to a file. Options the backend cannot honour are logged
        and ignored.
        """
        pass

    @abstractmethod
    async def revoke_share_link(self, file_id: str, share_id: str) -> None:
        pass

    @abstractmethod
    async def search_files(self, query: str, options: Optional[SearchOptions] = None) -> List[StorageItem]:
        pass

    @abstractmethod
    async def get_quota(self) -> Quota:
        pass

    async def get_thumbnail(self, file_id: str, size: int = 256) -> Optional[bytes]:
        """
        Returns thumbnail bytes, or None when the backend has none.
        Never raises; a missing thumbnail is a normal outcome.
        """
        return None

    async def get_preview_url(self, file_id: str) -> Optional[str]:
        """Returns a preview or temporary URL, or None. Never raises."""
        return None

    # --- batch operations ---

    async def batch_delete(self, file_ids: List[str]) -> BatchResult:
        """
        Deletes every id independently.

        :raises PartialBatchFailure: if any item failed; successes are kept.
        """
        return await run_batch(
            "delete", file_ids, self.delete_file,
            concurrency=self.settings.BATCH_CONCURRENCY, provider=self.kind.value,
        )

    async def batch_move(self, file_ids: List[str], target_folder_id: Optional[str] = None) -> BatchResult:
        return await run_batch(
            "move", file_ids, lambda file_id: self.move_file(file_id, target_folder_id),
            concurrency=self.settings.BATCH_CONCURRENCY, provider=self.kind.value,
        )

    async def batch_copy(self, file_ids: List[str], target_folder_id: Optional[str] = None) -> BatchResult:
        return await run_batch(
            "copy", file_ids, lambda file_id: self.copy_file(file_id, target_folder_id),
            concurrency=self.settings.BATCH_CONCURRENCY, provider=self.kind.value,
        )

    async def close(self) -> None:
        """Releases SDK sessions held by the adapter."""
        pass
