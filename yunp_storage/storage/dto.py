# storage/dto.py
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, ClassVar, List, Optional
import uuid

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProviderKind(str, Enum):
    LOCAL = "local"
    S3 = "s3"
    AZURE_BLOB = "azure-blob"
    GOOGLE_DRIVE = "google-drive"
    ONEDRIVE = "onedrive"
    DROPBOX = "dropbox"


class StorageItem(BaseModel):
    """
    A standardized Data Transfer Object for a stored file, abstracting away
    provider-specific file representations. `id` is backend-native and opaque.
    """

    id: str
    name: str
    size: int = 0
    mime_type: str = "application/octet-stream"
    path: str
    url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class StorageFolder(BaseModel):
    id: str
    name: str
    path: str
    parent_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ListResult(BaseModel):
    files: List[StorageItem] = Field(default_factory=list)
    folders: List[StorageFolder] = Field(default_factory=list)
    total: int = 0


class Quota(BaseModel):
    """
    Point-in-time usage snapshot. Backends without a hard limit report
    `UNLIMITED` as total and available.
    """

    UNLIMITED: ClassVar[int] = -1

    total: int
    used: int
    available: int

    @classmethod
    def unlimited(cls, used: int = 0) -> "Quota":
        return cls(total=cls.UNLIMITED, used=used, available=cls.UNLIMITED)

    @property
    def is_unlimited(self) -> bool:
        return self.total == self.UNLIMITED


class ByteRange(BaseModel):
    """Inclusive byte range; `end=None` reads to the end of the object."""

    start: int = Field(ge=0)
    end: Optional[int] = Field(default=None, ge=0)

    def slice(self, data: bytes) -> bytes:
        stop = None if self.end is None else self.end + 1
        return data[self.start:stop]

    def header(self) -> str:
        return f"bytes={self.start}-{'' if self.end is None else self.end}"


class UploadOptions(BaseModel):
    file_name: str
    mime_type: str = "application/octet-stream"
    size: Optional[int] = None
    folder_id: Optional[str] = None
    overwrite: bool = False


class ShareOptions(BaseModel):
    expires_at: Optional[datetime] = None
    password: Optional[str] = None
    allow_edit: bool = False


class ShareLink(BaseModel):
    url: str
    share_id: str
    expires_at: Optional[datetime] = None


class SearchOptions(BaseModel):
    folder_id: Optional[str] = None
    mime_type: Optional[str] = None
    limit: int = 50


class OAuthTokens(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    expires_at: Optional[datetime] = None

    def model_post_init(self, __context: Any) -> None:
        if self.expires_at is None and self.expires_in is not None:
            self.expires_at = utcnow() + timedelta(seconds=self.expires_in)


class BatchResult(BaseModel):
    """Outcome of a batch operation in which every item succeeded."""

    succeeded: List[str] = Field(default_factory=list)
    items: List[StorageItem] = Field(default_factory=list)


class ProviderRegistration(BaseModel):
    """Persisted binding of one user to one authenticated provider."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    provider_kind: ProviderKind
    display_name: str
    is_default: bool = False
    is_active: bool = True
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    quota_total: int = 0
    quota_used: int = 0
    quota_available: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_stale(self, leeway_seconds: int = 0, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or utcnow()
        return self.expires_at <= now + timedelta(seconds=leeway_seconds)

    def apply_quota(self, quota: Quota) -> None:
        self.quota_total = quota.total
        self.quota_used = quota.used
        self.quota_available = quota.available
        self.updated_at = utcnow()


class ProviderStatus(BaseModel):
    """One entry of `StorageManager.list_available()`."""

    kind: ProviderKind
    display_name: str
    configured: bool
    auth_url: Optional[str] = None
