from pathlib import Path
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
import logging
from functools import lru_cache

MiB = 1024 * 1024
ONEDRIVE_CHUNK_UNIT = 320 * 1024


class Settings(BaseSettings):
    """
    Centralized deployment configuration with type validation.
    Automatically reads variables from the environment and the .env file.
    A provider kind is available only when its credentials are present here.
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # --- General Settings ---
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[Path] = None
    REQUEST_TIMEOUT_SECONDS: float = 60.0
    BATCH_CONCURRENCY: int = 8
    TOKEN_REFRESH_LEEWAY_SECONDS: int = 60
    CREDENTIALS_FILE: Optional[Path] = None
    PUBLIC_BASE_URL: str = "http://localhost:3001"

    # --- Local Storage ---
    LOCAL_STORAGE_ROOT: Path = Path("./uploads")
    LOCAL_QUOTA_BYTES: int = 100 * 1024 * MiB

    # --- Amazon S3 Settings (optional) ---
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None
    AWS_REGION: str = "us-east-1"
    AWS_S3_BUCKET: str = "yunp-storage"
    AWS_ENDPOINT_URL: Optional[str] = None
    S3_MULTIPART_THRESHOLD: int = 100 * MiB
    S3_PART_SIZE: int = 10 * MiB
    S3_MAX_CONCURRENT_PARTS: int = 4

    # --- Azure Blob Settings (optional) ---
    AZURE_STORAGE_CONNECTION_STRING: Optional[str] = None
    AZURE_STORAGE_CONTAINER: str = "yunp-storage"
    AZURE_BLOCK_THRESHOLD: int = 100 * MiB
    AZURE_BLOCK_SIZE: int = 4 * MiB

    # --- Google Drive Settings (optional) ---
    GOOGLE_CLIENT_ID: Optional[str] = None
    GOOGLE_CLIENT_SECRET: Optional[str] = None
    GOOGLE_REDIRECT_URI: Optional[str] = None
    GDRIVE_RESUMABLE_THRESHOLD: int = 5 * MiB
    GDRIVE_CHUNK_SIZE: int = 8 * MiB

    # --- OneDrive Settings (optional) ---
    ONEDRIVE_CLIENT_ID: Optional[str] = None
    ONEDRIVE_CLIENT_SECRET: Optional[str] = None
    ONEDRIVE_REDIRECT_URI: Optional[str] = None
    ONEDRIVE_SIMPLE_UPLOAD_LIMIT: int = 4 * MiB
    ONEDRIVE_CHUNK_SIZE: int = 32 * ONEDRIVE_CHUNK_UNIT  # 10 MiB

    # --- Dropbox Settings (optional) ---
    DROPBOX_APP_KEY: Optional[str] = None
    DROPBOX_APP_SECRET: Optional[str] = None
    DROPBOX_REDIRECT_URI: Optional[str] = None
    DROPBOX_UPLOAD_THRESHOLD: int = 150 * MiB
    DROPBOX_UPLOAD_CHUNK_SIZE: int = 8 * MiB

    @model_validator(mode="after")
    def validate_transfer_sizes(self):
        pairs = {
            "S3": (self.S3_PART_SIZE, self.S3_MULTIPART_THRESHOLD),
            "AZURE": (self.AZURE_BLOCK_SIZE, self.AZURE_BLOCK_THRESHOLD),
            "GDRIVE": (self.GDRIVE_CHUNK_SIZE, None),
            "ONEDRIVE": (self.ONEDRIVE_CHUNK_SIZE, None),
            "DROPBOX": (self.DROPBOX_UPLOAD_CHUNK_SIZE, self.DROPBOX_UPLOAD_THRESHOLD),
        }
        for name, (chunk_size, threshold) in pairs.items():
            if chunk_size <= 0:
                raise ValueError(f"{name} chunk size must be positive")
            if threshold is not None:
                if threshold <= 0:
                    raise ValueError(f"{name} upload threshold must be positive")
                if chunk_size > threshold:
                    raise ValueError(
                        f"{name} chunk size ({chunk_size}) cannot exceed its threshold ({threshold})"
                    )

        if self.ONEDRIVE_CHUNK_SIZE % ONEDRIVE_CHUNK_UNIT != 0:
            raise ValueError("ONEDRIVE_CHUNK_SIZE must be a multiple of 320 KiB")
        if self.GDRIVE_RESUMABLE_THRESHOLD <= 0 or self.ONEDRIVE_SIMPLE_UPLOAD_LIMIT <= 0:
            raise ValueError("Upload thresholds must be positive")
        if not 1 <= self.BATCH_CONCURRENCY <= 32:
            raise ValueError("BATCH_CONCURRENCY must be between 1 and 32")
        if self.S3_MAX_CONCURRENT_PARTS < 1:
            raise ValueError("S3_MAX_CONCURRENT_PARTS must be at least 1")
        if self.REQUEST_TIMEOUT_SECONDS <= 0:
            raise ValueError("REQUEST_TIMEOUT_SECONDS must be positive")
        return self

    # --- Provider availability ---

    @property
    def s3_configured(self) -> bool:
        return bool(self.AWS_ACCESS_KEY_ID and self.AWS_SECRET_ACCESS_KEY)

    @property
    def azure_configured(self) -> bool:
        return bool(self.AZURE_STORAGE_CONNECTION_STRING)

    @property
    def gdrive_configured(self) -> bool:
        return bool(self.GOOGLE_CLIENT_ID and self.GOOGLE_CLIENT_SECRET)

    @property
    def onedrive_configured(self) -> bool:
        return bool(self.ONEDRIVE_CLIENT_ID and self.ONEDRIVE_CLIENT_SECRET)

    @property
    def dropbox_configured(self) -> bool:
        return bool(self.DROPBOX_APP_KEY and self.DROPBOX_APP_SECRET)


@lru_cache()
def get_settings() -> Settings:
    """
    Returns a cached instance of the deployment settings.
    The first call to this function will initialize the settings.
    """
    settings = Settings()
    settings.LOCAL_STORAGE_ROOT.mkdir(parents=True, exist_ok=True)
    logging.debug(f"Local storage root: {settings.LOCAL_STORAGE_ROOT.resolve()}")
    return settings
