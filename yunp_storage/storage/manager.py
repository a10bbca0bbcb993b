# storage/manager.py
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Type, Union
import weakref

from ..azure_blob import AzureBlobProvider
from ..config import Settings
from ..dbox import DropboxProvider
from ..exceptions import AuthError, NotFoundError, UnconfiguredProviderError
from ..gdrive import GoogleDriveProvider
from ..local import LocalProvider
from ..onedrive import OneDriveProvider
from ..s3 import S3Provider
from .base import StorageProvider
from .credentials import CredentialStore, InMemoryCredentialStore
from .dto import OAuthTokens, ProviderKind, ProviderRegistration, ProviderStatus, Quota, utcnow
from .singleflight import SingleFlight

DEFAULT_PROVIDERS: Dict[ProviderKind, Type[StorageProvider]] = {
    ProviderKind.LOCAL: LocalProvider,
    ProviderKind.S3: S3Provider,
    ProviderKind.AZURE_BLOB: AzureBlobProvider,
    ProviderKind.GOOGLE_DRIVE: GoogleDriveProvider,
    ProviderKind.ONEDRIVE: OneDriveProvider,
    ProviderKind.DROPBOX: DropboxProvider,
}

KindArg = Union[ProviderKind, str]


class StorageManager:
    """
    Resolves the adapter serving a user, owns the lifecycle of provider
    registrations (register, default election, removal, quota snapshots) and
    keeps access tokens fresh.

    Concurrent refreshes of one (user, kind) credential share a single
    in-flight refresh; default switches of one user are serialized.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[CredentialStore] = None,
        providers: Optional[Mapping[ProviderKind, Type[StorageProvider]]] = None,
    ):
        self.settings = settings
        self.store = store if store is not None else InMemoryCredentialStore()
        self.providers: Dict[ProviderKind, Type[StorageProvider]] = dict(
            providers if providers is not None else DEFAULT_PROVIDERS
        )
        self._adapters: Dict[Tuple[str, ProviderKind], StorageProvider] = {}
        self._refreshes = SingleFlight()
        self._user_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    async def __aenter__(self) -> "StorageManager":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        adapters = list(self._adapters.values())
        self._adapters.clear()
        for adapter in adapters:
            try:
                await adapter.close()
            except Exception as e:
                logging.warning(f"Failed to close {adapter.display_name} adapter: {e}")

    # --- provider catalogue ---

    def is_configured(self, kind: KindArg) -> bool:
        provider_cls = self.providers.get(ProviderKind(kind))
        return provider_cls is not None and provider_cls.is_configured(self.settings)

    def _provider_class(self, kind: KindArg) -> Type[StorageProvider]:
        kind = ProviderKind(kind)
        if not self.is_configured(kind):
            raise UnconfiguredProviderError(kind.value)
        return self.providers[kind]

    def list_available(self, state: Optional[str] = None) -> List[ProviderStatus]:
        """Every known provider kind with its configuration status and, for OAuth kinds, a consent URL."""
        statuses = []
        for kind in ProviderKind:
            provider_cls = self.providers.get(kind)
            if provider_cls is None:
                statuses.append(ProviderStatus(kind=kind, display_name=kind.value, configured=False))
                continue
            configured = provider_cls.is_configured(self.settings)
            auth_url = None
            if configured and provider_cls.requires_user_credentials:
                auth_url = provider_cls(self.settings).get_auth_url(state)
            statuses.append(ProviderStatus(
                kind=kind, display_name=provider_cls.display_name, configured=configured, auth_url=auth_url,
            ))
        return statuses

    def get_auth_url(self, kind: KindArg, state: Optional[str] = None) -> str:
        return self._provider_class(kind)(self.settings).get_auth_url(state)

    async def handle_callback(self, kind: KindArg, code: str, state: Optional[str] = None) -> OAuthTokens:
        """Exchanges an authorization code for tokens. Persisting them is up to `register`."""
        adapter = self._provider_class(kind)(self.settings)
        try:
            return await adapter.handle_callback(code, state)
        finally:
            await adapter.close()

    # --- resolution ---

    async def resolve(self, user_id: str, provider_kind: Optional[KindArg] = None) -> StorageProvider:
        """
        Returns an authenticated adapter for the user.

        Resolution order: the explicit kind, then the user's default
        registration, then local storage. A stale token is refreshed and
        persisted before the adapter is returned.

        :raises UnconfiguredProviderError: if an explicit kind is not configured.
        :raises AuthError: "not_registered" for an explicit OAuth kind the user never linked.
        """
        self._check_user(user_id)
        if provider_kind is not None:
            kind = ProviderKind(provider_kind)
            provider_cls = self._provider_class(kind)
            registration = await self.store.find(user_id, kind)
            if registration is None:
                if provider_cls.requires_user_credentials:
                    raise AuthError(
                        "not_registered", f"User has not linked {provider_cls.display_name}", provider=kind.value
                    )
                return await self._bind(user_id, kind, None)
            return await self._bind_registration(registration)

        registration = await self._default_registration(user_id)
        if registration is not None:
            if self.is_configured(registration.provider_kind):
                return await self._bind_registration(registration)
            logging.warning(
                f"Default provider '{registration.provider_kind.value}' of user {user_id} is no longer "
                f"configured; falling back to local storage."
            )
        return await self._bind(user_id, ProviderKind.LOCAL, None)

    async def execute(
        self,
        user_id: str,
        operation: Callable[[StorageProvider], Awaitable[Any]],
        provider_kind: Optional[KindArg] = None,
    ) -> Any:
        """
        Runs `operation` against the resolved adapter. An AuthError triggers
        one forced refresh and one retry; a second AuthError propagates.
        """
        adapter = await self.resolve(user_id, provider_kind)
        try:
            return await operation(adapter)
        except AuthError as e:
            registration = await self.store.find(user_id, adapter.kind)
            if registration is None or not registration.refresh_token:
                raise
            logging.warning(f"{adapter.display_name} rejected credentials of user {user_id} ({e.reason}); refreshing.")
            await self._refresh(user_id, adapter.kind, adapter.access_token)
        adapter = await self.resolve(user_id, adapter.kind)
        return await operation(adapter)

    async def check_connection(self, user_id: str, provider_kind: Optional[KindArg] = None) -> Quota:
        """Resolves the provider and fetches its live quota without caching it."""
        return await self.execute(user_id, lambda adapter: adapter.get_quota(), provider_kind)

    async def _bind_registration(self, registration: ProviderRegistration) -> StorageProvider:
        if registration.is_stale(self.settings.TOKEN_REFRESH_LEEWAY_SECONDS):
            registration = await self._refresh(
                registration.user_id, registration.provider_kind, registration.access_token
            )
        return await self._bind(registration.user_id, registration.provider_kind, registration)

    async def _bind(
        self, user_id: str, kind: ProviderKind, registration: Optional[ProviderRegistration]
    ) -> StorageProvider:
        adapter = self._adapter(user_id, kind)
        if registration is not None and adapter.access_token != registration.access_token:
            await adapter.authenticate(registration.access_token, registration.refresh_token)
        return adapter

    def _adapter(self, user_id: str, kind: ProviderKind) -> StorageProvider:
        key = (user_id, kind)
        adapter = self._adapters.get(key)
        if adapter is None:
            adapter = self._provider_class(kind)(self.settings, user_id)
            self._adapters[key] = adapter
        return adapter

    # --- credential refresh ---

    async def _refresh(self, user_id: str, kind: ProviderKind, stale_token: Optional[str]) -> ProviderRegistration:
        return await self._refreshes.do((user_id, kind), lambda: self._do_refresh(user_id, kind, stale_token))

    async def _do_refresh(self, user_id: str, kind: ProviderKind, stale_token: Optional[str]) -> ProviderRegistration:
        registration = await self.store.find(user_id, kind)
        if registration is None:
            raise AuthError("not_registered", provider=kind.value)
        leeway = self.settings.TOKEN_REFRESH_LEEWAY_SECONDS
        if registration.access_token != stale_token and not registration.is_stale(leeway):
            # Another flight already replaced the token.
            return registration
        if not registration.refresh_token:
            raise AuthError("no_refresh_token", provider=kind.value)

        adapter = self._adapter(user_id, kind)
        await adapter.authenticate(registration.access_token, registration.refresh_token)
        logging.info(f"Refreshing {adapter.display_name} access token of user {user_id}")
        tokens = await adapter.refresh_access_token()

        registration.access_token = tokens.access_token
        if tokens.refresh_token:
            registration.refresh_token = tokens.refresh_token
        registration.expires_at = tokens.expires_at
        registration.updated_at = utcnow()
        await self.store.save(registration)
        return registration

    # --- registrations ---

    def _user_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    @staticmethod
    def _check_user(user_id: str) -> None:
        if not user_id:
            raise ValueError("user_id must be a non-empty string")

    async def _default_registration(self, user_id: str) -> Optional[ProviderRegistration]:
        for registration in await self.store.list_for_user(user_id):
            if registration.is_default:
                return registration
        return None

    async def list_registrations(self, user_id: str) -> List[ProviderRegistration]:
        """Active registrations of a user, the default first, then oldest first."""
        self._check_user(user_id)
        registrations = await self.store.list_for_user(user_id)
        return sorted(registrations, key=lambda r: (not r.is_default, r.created_at))

    async def _get_owned(self, user_id: str, registration_id: str) -> ProviderRegistration:
        registration = await self.store.get(registration_id)
        if registration is None or registration.user_id != user_id or not registration.is_active:
            raise NotFoundError(f"Registration '{registration_id}' not found for user {user_id}")
        return registration

    async def register(
        self,
        user_id: str,
        provider_kind: KindArg,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        display_name: Optional[str] = None,
        expires_at=None,
    ) -> ProviderRegistration:
        """
        Authenticates the provider, fetches its initial quota and stores the
        registration. The user's first active registration becomes the default.
        Registering a kind the user already has re-links that registration.
        """
        self._check_user(user_id)
        kind = ProviderKind(provider_kind)
        provider_cls = self._provider_class(kind)

        adapter = provider_cls(self.settings, user_id)
        await adapter.authenticate(access_token, refresh_token)
        quota = await adapter.get_quota()

        async with self._user_lock(user_id):
            active = await self.store.list_for_user(user_id)
            registration = next((r for r in active if r.provider_kind == kind), None)
            if registration is None:
                registration = ProviderRegistration(
                    user_id=user_id,
                    provider_kind=kind,
                    display_name=display_name or provider_cls.display_name,
                    is_default=not active,
                )
            elif display_name:
                registration.display_name = display_name
            registration.access_token = access_token
            registration.refresh_token = refresh_token
            registration.expires_at = expires_at
            registration.apply_quota(quota)
            await self.store.save(registration)

        previous = self._adapters.get((user_id, kind))
        self._adapters[(user_id, kind)] = adapter
        if previous is not None and previous is not adapter:
            await previous.close()
        logging.info(
            f"Registered {provider_cls.display_name} for user {user_id} "
            f"(registration {registration.id}, default: {registration.is_default})"
        )
        return registration

    async def set_default(self, user_id: str, registration_id: str) -> ProviderRegistration:
        """Makes a registration the user's default; the old and new default are written together."""
        async with self._user_lock(user_id):
            target = await self._get_owned(user_id, registration_id)
            if target.is_default:
                return target
            changed = []
            for registration in await self.store.list_for_user(user_id):
                if registration.is_default and registration.id != target.id:
                    registration.is_default = False
                    registration.updated_at = utcnow()
                    changed.append(registration)
            target.is_default = True
            target.updated_at = utcnow()
            changed.append(target)
            await self.store.save_many(changed)
        logging.info(f"User {user_id} default provider is now {target.display_name} ({target.id})")
        return target

    async def remove(self, user_id: str, registration_id: str) -> Optional[ProviderRegistration]:
        """
        Deactivates a registration. When it was the default, the oldest
        remaining active registration is promoted in the same write.

        :return: The promoted registration, if any.
        """
        promoted = None
        async with self._user_lock(user_id):
            target = await self._get_owned(user_id, registration_id)
            was_default = target.is_default
            target.is_active = False
            target.is_default = False
            target.updated_at = utcnow()
            changed = [target]
            if was_default:
                remaining = [r for r in await self.store.list_for_user(user_id) if r.id != target.id]
                if remaining:
                    promoted = min(remaining, key=lambda r: r.created_at)
                    promoted.is_default = True
                    promoted.updated_at = utcnow()
                    changed.append(promoted)
            await self.store.save_many(changed)

        adapter = self._adapters.pop((user_id, target.provider_kind), None)
        if adapter is not None:
            await adapter.close()
        logging.info(
            f"Removed {target.display_name} for user {user_id}"
            + (f"; promoted {promoted.display_name} to default" if promoted else "")
        )
        return promoted

    async def sync_quota(self, user_id: str, registration_id: str) -> ProviderRegistration:
        """Fetches live quota for a registration and overwrites its cached snapshot."""
        registration = await self._get_owned(user_id, registration_id)
        quota = await self.execute(user_id, lambda adapter: adapter.get_quota(), registration.provider_kind)
        async with self._user_lock(user_id):
            # Re-read: the call above may have refreshed and stored new tokens.
            registration = await self._get_owned(user_id, registration_id)
            registration.apply_quota(quota)
            await self.store.save(registration)
        logging.info(f"Synced quota of {registration.display_name} for user {user_id}: {quota.used}/{quota.total}")
        return registration
