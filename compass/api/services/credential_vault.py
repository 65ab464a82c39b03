"""Delegated OAuth credential vault with Key Vault support.

Stores one access/refresh token pair per (client, organization) and hands
out access tokens that are valid for at least the configured safety margin.

Storage backends:
1. Database (default): ``oauth_credentials`` table
2. Azure Key Vault: one secret per pair, named
   ``client-{client_id}-org-{organization_id}-oauth-tokens``, holding JSON

Refresh is single-flight per (client, organization): concurrent callers that
arrive while a refresh is in flight wait for it and reuse its result, so the
identity provider sees one refresh per expiry window. Locks are per pair,
never global.

Platform fallback: ``PlatformCredential`` wraps the platform's own service
principal (``ClientSecretCredential``) or ``DefaultAzureCredential``. It is a
separate credential path, and results say which path produced the token.
"""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from functools import lru_cache
from typing import Protocol

import httpx
from azure.core.exceptions import AzureError, ClientAuthenticationError, ResourceNotFoundError
from azure.identity import ClientSecretCredential, DefaultAzureCredential
from azure.keyvault.secrets import SecretClient

from compass.core.config import Settings, get_settings
from compass.core.database import SessionFactory, get_db_context
from compass.core.errors import (
    CredentialInvalidError,
    CredentialMissingError,
    IdentityProviderUnavailableError,
    InsufficientPermissionError,
)
from compass.core.retry import PLATFORM_TOKEN_POLICY, RetryPolicy, call_with_retry, retry_with_backoff
from compass.models.credential import OAuthCredential

logger = logging.getLogger(__name__)

SUBSCRIPTION_API_VERSION = "2020-01-01"


class TokenStatus(str, Enum):
    VALID = "Valid"
    MISSING = "CredentialMissing"
    INVALID = "CredentialInvalid"
    UNAVAILABLE = "IdentityProviderUnavailable"


class CredentialSource(str, Enum):
    OAUTH = "oauth"
    PLATFORM = "platform-default"


class AccessStatus(str, Enum):
    NO_CREDENTIALS = "NoCredentials"
    CREDENTIAL_INVALID = "CredentialInvalid"
    INSUFFICIENT_PERMISSION = "InsufficientPermission"
    UNREACHABLE = "Unreachable"
    VALID = "Valid"


_STATUS_ERRORS = {
    TokenStatus.MISSING: CredentialMissingError,
    TokenStatus.INVALID: CredentialInvalidError,
    TokenStatus.UNAVAILABLE: IdentityProviderUnavailableError,
}


@dataclass(frozen=True)
class TokenResult:
    """Outcome of asking for a token. Only ``Valid`` carries one."""

    status: TokenStatus
    source: CredentialSource = CredentialSource.OAUTH
    access_token: str | None = None
    expires_at: datetime | None = None
    refreshed: bool = False
    message: str | None = None

    @property
    def is_valid(self) -> bool:
        return self.status == TokenStatus.VALID and bool(self.access_token)

    @property
    def remediation_hint(self) -> str | None:
        error_class = _STATUS_ERRORS.get(self.status)
        return error_class.remediation_hint if error_class else None

    def to_error(self):
        """Exception matching a non-valid result."""
        error_class = _STATUS_ERRORS.get(self.status)
        if error_class is None:
            raise ValueError("a valid token result has no error")
        return error_class(self.message or self.status.value)


@dataclass(frozen=True)
class AccessCheck:
    status: AccessStatus
    subscription_id: str
    message: str | None = None
    checked_at: datetime | None = None

    @property
    def remediation_hint(self) -> str | None:
        if self.status == AccessStatus.NO_CREDENTIALS:
            return CredentialMissingError.remediation_hint
        if self.status == AccessStatus.CREDENTIAL_INVALID:
            return CredentialInvalidError.remediation_hint
        if self.status == AccessStatus.INSUFFICIENT_PERMISSION:
            return InsufficientPermissionError.remediation_hint
        return None


@dataclass(frozen=True)
class StoredCredential:
    client_id: str
    organization_id: str
    access_token: str
    refresh_token: str | None
    expires_at: datetime
    scope: str | None = None
    status: str = "Active"
    last_error: str | None = None
    last_refreshed_at: datetime | None = None

    def expires_within(self, seconds: int, now: datetime) -> bool:
        return self.expires_at - now <= timedelta(seconds=seconds)

    def to_json(self) -> str:
        payload = asdict(self)
        for key in ("expires_at", "last_refreshed_at"):
            if payload[key] is not None:
                payload[key] = payload[key].isoformat()
        return json.dumps(payload)

    @classmethod
    def from_json(cls, raw: str) -> "StoredCredential":
        payload = json.loads(raw)
        for key in ("expires_at", "last_refreshed_at"):
            if payload.get(key):
                payload[key] = datetime.fromisoformat(payload[key])
        return cls(**payload)


# =============================================================================
# Storage backends
# =============================================================================

class CredentialStore(Protocol):
    def load(self, client_id: str, organization_id: str) -> StoredCredential | None: ...

    def save(self, credential: StoredCredential) -> None: ...

    def delete(self, client_id: str, organization_id: str) -> bool: ...


class DatabaseCredentialStore:
    """Credential store backed by the ``oauth_credentials`` table."""

    def __init__(self, session_factory: SessionFactory = get_db_context) -> None:
        self._session_factory = session_factory

    def load(self, client_id: str, organization_id: str) -> StoredCredential | None:
        with self._session_factory() as db:
            row = (
                db.query(OAuthCredential)
                .filter(
                    OAuthCredential.client_id == client_id,
                    OAuthCredential.organization_id == organization_id,
                )
                .first()
            )
            if row is None:
                return None
            return StoredCredential(
                client_id=row.client_id,
                organization_id=row.organization_id,
                access_token=row.access_token,
                refresh_token=row.refresh_token,
                expires_at=row.expires_at,
                scope=row.scope,
                status=row.status,
                last_error=row.last_error,
                last_refreshed_at=row.last_refreshed_at,
            )

    def save(self, credential: StoredCredential) -> None:
        with self._session_factory() as db:
            row = (
                db.query(OAuthCredential)
                .filter(
                    OAuthCredential.client_id == credential.client_id,
                    OAuthCredential.organization_id == credential.organization_id,
                )
                .first()
            )
            if row is None:
                row = OAuthCredential(
                    client_id=credential.client_id,
                    organization_id=credential.organization_id,
                )
                db.add(row)
            row.access_token = credential.access_token
            row.refresh_token = credential.refresh_token
            row.expires_at = credential.expires_at
            row.scope = credential.scope
            row.status = credential.status
            row.last_error = credential.last_error
            row.last_refreshed_at = credential.last_refreshed_at

    def delete(self, client_id: str, organization_id: str) -> bool:
        with self._session_factory() as db:
            deleted = (
                db.query(OAuthCredential)
                .filter(
                    OAuthCredential.client_id == client_id,
                    OAuthCredential.organization_id == organization_id,
                )
                .delete()
            )
            return deleted > 0


class KeyVaultCredentialStore:
    """Credential store keeping each token pair as a Key Vault secret."""

    def __init__(self, vault_url: str, secret_client: SecretClient | None = None) -> None:
        self._client = secret_client or SecretClient(
            vault_url=vault_url,
            credential=DefaultAzureCredential(),
        )

    @staticmethod
    def secret_name(client_id: str, organization_id: str) -> str:
        return f"client-{client_id}-org-{organization_id}-oauth-tokens"

    def load(self, client_id: str, organization_id: str) -> StoredCredential | None:
        try:
            secret = self._client.get_secret(self.secret_name(client_id, organization_id))
        except ResourceNotFoundError:
            return None
        if not secret.value:
            return None
        return StoredCredential.from_json(secret.value)

    def save(self, credential: StoredCredential) -> None:
        self._client.set_secret(
            self.secret_name(credential.client_id, credential.organization_id),
            credential.to_json(),
            content_type="application/json",
        )

    def delete(self, client_id: str, organization_id: str) -> bool:
        try:
            self._client.begin_delete_secret(self.secret_name(client_id, organization_id))
        except ResourceNotFoundError:
            return False
        return True


def build_credential_store(settings: Settings | None = None) -> CredentialStore:
    """Credential store selected by ``CREDENTIAL_STORE``."""
    settings = settings or get_settings()
    if settings.credential_store == "key_vault":
        logger.info(f"Delegated credentials stored in Key Vault: {settings.key_vault_url}")
        return KeyVaultCredentialStore(str(settings.key_vault_url))
    return DatabaseCredentialStore()


# =============================================================================
# Vault
# =============================================================================

class CredentialVault:
    """Hands out delegated access tokens, refreshing them when needed."""

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_policy: RetryPolicy | None = None,
        clock=datetime.utcnow,
        sleep=asyncio.sleep,
    ) -> None:
        self._store = store
        self.settings = settings or get_settings()
        self._transport = transport
        self._retry_policy = retry_policy or RetryPolicy(
            max_attempts=self.settings.token_refresh_max_attempts,
            base_delay=1.0,
            max_delay=10.0,
        )
        self._clock = clock
        self._sleep = sleep

        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._cache: dict[tuple[str, str], StoredCredential] = {}
        self._refresh_generation: dict[tuple[str, str], int] = {}
        self._last_refresh: dict[tuple[str, str], TokenResult] = {}
        self._refresh_calls = 0

    def _lock_for(self, key: tuple[str, str]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _needs_refresh(self, expires_at: datetime | None) -> bool:
        if expires_at is None:
            return True
        return expires_at - self._clock() <= timedelta(seconds=self.settings.token_refresh_margin_seconds)

    def _load(self, key: tuple[str, str]) -> StoredCredential | None:
        cached = self._cache.get(key)
        if cached is not None and cached.status == "Active" and not self._needs_refresh(cached.expires_at):
            return cached
        credential = self._store.load(*key)
        if credential is None:
            self._cache.pop(key, None)
        else:
            self._cache[key] = credential
        return credential

    async def get_token(self, client_id: str, organization_id: str) -> TokenResult:
        """Return a token valid beyond the safety margin, refreshing if needed.

        Never raises for credential problems; the result status says whether
        the pair needs initial setup (``CredentialMissing``), re-consent
        (``CredentialInvalid``) or a later retry (``IdentityProviderUnavailable``).
        """
        key = (client_id, organization_id)
        lock = self._lock_for(key)
        observed_generation = self._refresh_generation.get(key, 0)

        async with lock:
            if self._refresh_generation.get(key, 0) != observed_generation:
                shared = self._last_refresh.get(key)
                if shared is not None and (not shared.is_valid or not self._needs_refresh(shared.expires_at)):
                    logger.debug(f"Reusing in-flight refresh result for client {client_id}")
                    return shared

            credential = self._load(key)
            if credential is None or credential.status == "Revoked":
                return TokenResult(
                    status=TokenStatus.MISSING,
                    message=f"No delegated credentials stored for client {client_id}",
                )
            if credential.status == "Invalid":
                return TokenResult(
                    status=TokenStatus.INVALID,
                    message=credential.last_error or "Stored credentials were rejected by the identity provider",
                )
            if not self._needs_refresh(credential.expires_at):
                return TokenResult(
                    status=TokenStatus.VALID,
                    access_token=credential.access_token,
                    expires_at=credential.expires_at,
                )

            result = await self._refresh(credential)
            self._refresh_generation[key] = self._refresh_generation.get(key, 0) + 1
            self._last_refresh[key] = result
            return result

    async def _post_token_request(self, form: dict[str, str]) -> dict:
        async with httpx.AsyncClient(
            timeout=self.settings.identity_timeout_seconds,
            transport=self._transport,
        ) as client:
            response = await client.post(self.settings.oauth_token_endpoint, data=form)
            response.raise_for_status()
            return response.json()

    async def _refresh(self, credential: StoredCredential) -> TokenResult:
        key = (credential.client_id, credential.organization_id)
        if not credential.refresh_token:
            return self._mark_invalid(credential, "Access token expired and no refresh token is stored")

        form = {
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
            "scope": self.settings.oauth_management_scope,
        }
        if self.settings.oauth_client_id:
            form["client_id"] = self.settings.oauth_client_id
        if self.settings.oauth_client_secret:
            form["client_secret"] = self.settings.oauth_client_secret

        self._refresh_calls += 1
        logger.info(f"Refreshing delegated token for client {credential.client_id}")

        try:
            payload = await call_with_retry(
                self._post_token_request,
                form,
                policy=self._retry_policy,
                sleep=self._sleep,
                description=f"token refresh for client {credential.client_id}",
            )
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in (400, 401):
                return self._mark_invalid(credential, f"Refresh token rejected: {self._error_description(e.response)}")
            return TokenResult(
                status=TokenStatus.UNAVAILABLE,
                message=f"Identity provider returned HTTP {status}",
            )
        except httpx.HTTPError as e:
            return TokenResult(
                status=TokenStatus.UNAVAILABLE,
                message=f"Identity provider unreachable: {e.__class__.__name__}",
            )
        except ValueError:
            return TokenResult(
                status=TokenStatus.UNAVAILABLE,
                message="Identity provider returned an unreadable response",
            )

        access_token = payload.get("access_token")
        if not access_token:
            return TokenResult(
                status=TokenStatus.UNAVAILABLE,
                message="Token response did not contain an access token",
            )

        now = self._clock()
        refreshed = replace(
            credential,
            access_token=access_token,
            # The provider may omit the refresh token; keep the current one then
            refresh_token=payload.get("refresh_token") or credential.refresh_token,
            expires_at=now + timedelta(seconds=int(payload.get("expires_in", 3600))),
            scope=payload.get("scope", credential.scope),
            status="Active",
            last_error=None,
            last_refreshed_at=now,
        )
        self._store.save(refreshed)
        self._cache[key] = refreshed
        logger.info(f"Delegated token refreshed for client {credential.client_id}, expires {refreshed.expires_at}")

        return TokenResult(
            status=TokenStatus.VALID,
            access_token=refreshed.access_token,
            expires_at=refreshed.expires_at,
            refreshed=True,
        )

    def _mark_invalid(self, credential: StoredCredential, message: str) -> TokenResult:
        logger.warning(f"Delegated credentials invalid for client {credential.client_id}: {message}")
        invalid = replace(credential, status="Invalid", last_error=message)
        self._store.save(invalid)
        self._cache[(credential.client_id, credential.organization_id)] = invalid
        return TokenResult(status=TokenStatus.INVALID, message=message)

    @staticmethod
    def _error_description(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"HTTP {response.status_code}"
        return body.get("error_description") or body.get("error") or f"HTTP {response.status_code}"

    async def test_access(self, client_id: str, organization_id: str, subscription_id: str) -> AccessCheck:
        """Confirm the delegated token can read ``subscription_id``."""
        checked_at = self._clock()
        token = await self.get_token(client_id, organization_id)

        if token.status == TokenStatus.MISSING:
            return AccessCheck(AccessStatus.NO_CREDENTIALS, subscription_id, token.message, checked_at)
        if token.status == TokenStatus.INVALID:
            return AccessCheck(AccessStatus.CREDENTIAL_INVALID, subscription_id, token.message, checked_at)
        if not token.is_valid:
            return AccessCheck(AccessStatus.UNREACHABLE, subscription_id, token.message, checked_at)

        url = (
            f"{self.settings.management_endpoint}/subscriptions/{subscription_id}"
            f"?api-version={SUBSCRIPTION_API_VERSION}"
        )
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.identity_timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.get(url, headers={"Authorization": f"Bearer {token.access_token}"})
        except httpx.HTTPError as e:
            return AccessCheck(AccessStatus.UNREACHABLE, subscription_id, str(e), checked_at)

        if response.status_code == 200:
            return AccessCheck(AccessStatus.VALID, subscription_id, None, checked_at)
        if response.status_code == 401:
            return AccessCheck(AccessStatus.CREDENTIAL_INVALID, subscription_id, "Token rejected by Azure", checked_at)
        if response.status_code in (403, 404):
            return AccessCheck(
                AccessStatus.INSUFFICIENT_PERMISSION,
                subscription_id,
                f"Subscription not readable with delegated token (HTTP {response.status_code})",
                checked_at,
            )
        return AccessCheck(
            AccessStatus.UNREACHABLE, subscription_id, f"Unexpected HTTP {response.status_code}", checked_at
        )

    def store_tokens(
        self,
        client_id: str,
        organization_id: str,
        access_token: str,
        refresh_token: str | None,
        expires_in: int,
        scope: str | None = None,
    ) -> StoredCredential:
        """Persist tokens obtained from the consent flow."""
        now = self._clock()
        credential = StoredCredential(
            client_id=client_id,
            organization_id=organization_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=now + timedelta(seconds=expires_in),
            scope=scope,
            last_refreshed_at=now,
        )
        self._store.save(credential)
        self._cache[(client_id, organization_id)] = credential
        logger.info(f"Stored delegated credentials for client {client_id}")
        return credential

    def revoke(self, client_id: str, organization_id: str) -> bool:
        """Forget stored credentials for the pair."""
        key = (client_id, organization_id)
        self._cache.pop(key, None)
        self._last_refresh.pop(key, None)
        self._refresh_generation.pop(key, None)
        removed = self._store.delete(client_id, organization_id)
        logger.info(f"Revoked delegated credentials for client {client_id} (existed: {removed})")
        return removed

    def clear_cache(self) -> None:
        """Drop cached credentials, forcing the next call to read the store."""
        count = len(self._cache)
        self._cache.clear()
        logger.info(f"Credential cache cleared ({count} entries)")

    def get_cache_stats(self) -> dict:
        now = self._clock()
        return {
            "cached_credentials": len(self._cache),
            "expiring": sum(
                1 for c in self._cache.values()
                if c.expires_within(self.settings.token_refresh_margin_seconds, now)
            ),
            "invalid": sum(1 for c in self._cache.values() if c.status != "Active"),
            "refresh_calls": self._refresh_calls,
            "locks": len(self._locks),
        }


# =============================================================================
# Platform fallback
# =============================================================================

class PlatformCredential:
    """The platform's own Azure credential, used when delegation is unusable."""

    def __init__(self, settings: Settings | None = None, credential=None) -> None:
        self.settings = settings or get_settings()
        self._credential = credential

    def _get_credential(self):
        if self._credential is None:
            if self.settings.has_platform_service_principal:
                self._credential = ClientSecretCredential(
                    tenant_id=self.settings.azure_tenant_id,
                    client_id=self.settings.azure_client_id,
                    client_secret=self.settings.azure_client_secret,
                )
            else:
                self._credential = DefaultAzureCredential()
        return self._credential

    @retry_with_backoff(PLATFORM_TOKEN_POLICY)
    async def _acquire(self):
        credential = self._get_credential()
        return await asyncio.wait_for(
            asyncio.to_thread(credential.get_token, self.settings.management_scope),
            timeout=self.settings.identity_timeout_seconds,
        )

    async def get_token(self) -> TokenResult:
        try:
            token = await self._acquire()
        except ClientAuthenticationError as e:
            logger.warning(f"Platform credential unavailable: {e}")
            return TokenResult(
                status=TokenStatus.INVALID,
                source=CredentialSource.PLATFORM,
                message=f"Platform credential rejected: {e}",
            )
        except AzureError as e:
            logger.error(f"Platform credential request failed: {e}")
            return TokenResult(
                status=TokenStatus.UNAVAILABLE,
                source=CredentialSource.PLATFORM,
                message=f"Platform credential request failed: {e}",
            )
        except TimeoutError:
            logger.error(
                f"Platform credential request timed out after {self.settings.identity_timeout_seconds}s"
            )
            return TokenResult(
                status=TokenStatus.UNAVAILABLE,
                source=CredentialSource.PLATFORM,
                message="Platform credential request timed out",
            )

        return TokenResult(
            status=TokenStatus.VALID,
            source=CredentialSource.PLATFORM,
            access_token=token.token,
            expires_at=datetime.utcfromtimestamp(token.expires_on),
        )


@lru_cache
def get_credential_vault() -> CredentialVault:
    """Process-wide vault; its locks and cache are shared by all assessments."""
    return CredentialVault(build_credential_store())
