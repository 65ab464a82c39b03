"""Azure Resource Graph inventory fetcher.

Queries the Resource Graph REST API once per subscription with
``$skipToken`` pagination. Subscriptions are fetched concurrently under a
bounded semaphore and fail independently: a subscription that cannot be read
shows up in ``FetchResult.errors`` and contributes no resources, while the
rest of the batch still succeeds.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from compass.core.config import Settings, get_settings
from compass.core.errors import AssessmentCancelledError, FailureReason
from compass.core.retry import RetryPolicy, call_with_retry, is_retryable_error

logger = logging.getLogger(__name__)

EXCLUDED_RESOURCE_TYPES = (
    "microsoft.resources/deployments",
    "microsoft.resources/deploymentscripts",
    "microsoft.resources/templatespecs",
    "microsoft.alertsmanagement/actionrules",
    "microsoft.security/assessments",
)

INVENTORY_QUERY = (
    "Resources"
    f" | where type !in~ ({', '.join(repr(t) for t in EXCLUDED_RESOURCE_TYPES)})"
    " | project id, name, type, resourceGroup, location, subscriptionId, tags, kind, sku"
    " | order by type asc, name asc"
)

CONNECTION_TEST_QUERY = "Resources | limit 1 | project id, name, type"


@dataclass(frozen=True)
class ResourceSnapshot:
    """One resource as returned by Resource Graph."""

    resource_id: str
    name: str
    resource_type: str
    subscription_id: str
    resource_group: str | None = None
    location: str | None = None
    tags: dict[str, str] = field(default_factory=dict)
    sku: str | None = None
    kind: str | None = None

    @classmethod
    def from_graph_row(cls, row: dict[str, Any], subscription_id: str) -> "ResourceSnapshot":
        """Build a snapshot from an ``objectArray`` row.

        Raises:
            ValueError: If the row lacks an id, name or type
        """
        if not isinstance(row, dict):
            raise ValueError(f"expected an object row, got {type(row).__name__}")

        resource_id = row.get("id")
        name = row.get("name")
        resource_type = row.get("type")
        if not resource_id or not name or not resource_type:
            raise ValueError(f"row is missing id, name or type: {str(row)[:200]}")

        raw_tags = row.get("tags") or {}
        if not isinstance(raw_tags, dict):
            raise ValueError(f"tags of {resource_id} are not an object")
        # Resource Graph returns null for valueless tags
        tags = {str(key): "" if value is None else str(value) for key, value in raw_tags.items()}

        sku = row.get("sku")
        if isinstance(sku, dict):
            sku = sku.get("name") or sku.get("tier")

        return cls(
            resource_id=str(resource_id),
            name=str(name),
            resource_type=str(resource_type),
            subscription_id=str(row.get("subscriptionId") or subscription_id),
            resource_group=row.get("resourceGroup"),
            location=row.get("location"),
            tags=tags,
            sku=str(sku) if sku else None,
            kind=row.get("kind") or None,
        )


@dataclass(frozen=True)
class SubscriptionError:
    """Why one subscription contributed no resources."""

    subscription_id: str
    reason: str
    message: str
    status_code: int | None = None


@dataclass
class FetchResult:
    resources: list[ResourceSnapshot] = field(default_factory=list)
    errors: list[SubscriptionError] = field(default_factory=list)
    succeeded_subscriptions: list[str] = field(default_factory=list)
    skipped_rows: int = 0
    fetched_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def all_failed(self) -> bool:
        return bool(self.errors) and not self.succeeded_subscriptions

    @property
    def is_partial(self) -> bool:
        return bool(self.errors) and bool(self.succeeded_subscriptions)

    def error_reasons(self) -> set[str]:
        return {error.reason for error in self.errors}


def classify_fetch_error(error: Exception) -> tuple[str, int | None]:
    """Map a failed subscription fetch to a stable reason code."""
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status == 401:
            return FailureReason.CREDENTIAL_INVALID.value, status
        if status == 403:
            return FailureReason.INSUFFICIENT_PERMISSION.value, status
        if status in (400, 404):
            return "InvalidSubscription", status
        if status == 429:
            return "Throttled", status
        return FailureReason.PROVIDER_UNAVAILABLE.value, status
    if isinstance(error, httpx.TimeoutException):
        return "Timeout", None
    if isinstance(error, httpx.TransportError):
        return FailureReason.PROVIDER_UNAVAILABLE.value, None
    return "UnexpectedError", None


class ResourceGraphClient:
    """Resource Graph client bound to the configured limits."""

    def __init__(
        self,
        settings: Settings | None = None,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep=asyncio.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=self.settings.resource_graph_max_attempts,
            base_delay=self.settings.resource_graph_base_delay,
            max_delay=self.settings.resource_graph_max_delay,
        )
        self._transport = transport
        self._sleep = sleep

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.resource_graph_timeout_seconds,
            transport=self._transport,
        )

    async def _query(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        subscription_ids: list[str],
        query: str,
        skip_token: str | None = None,
        top: int | None = None,
    ) -> dict[str, Any]:
        """Run one Resource Graph query page."""
        options: dict[str, Any] = {"resultFormat": "objectArray"}
        if top:
            options["$top"] = top
        if skip_token:
            options["$skipToken"] = skip_token

        response = await client.post(
            self.settings.resource_graph_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            json={"subscriptions": subscription_ids, "query": query, "options": options},
        )
        response.raise_for_status()
        return response.json()

    async def fetch_resources(
        self,
        subscription_ids: list[str],
        access_token: str,
        cancel_event: asyncio.Event | None = None,
    ) -> FetchResult:
        """Fetch the inventory of every subscription.

        Waits for all subscriptions to finish or fail before returning, so
        callers never observe a partially filled inventory.

        Raises:
            AssessmentCancelledError: If ``cancel_event`` is set mid-fetch
        """
        unique_ids = list(dict.fromkeys(subscription_ids))
        semaphore = asyncio.Semaphore(self.settings.max_parallel_subscriptions)
        logger.info(
            f"Fetching inventory for {len(unique_ids)} subscriptions "
            f"(max {self.settings.max_parallel_subscriptions} in parallel)"
        )

        async with self._client() as client:
            tasks = [
                asyncio.ensure_future(
                    self._fetch_subscription(client, semaphore, sub_id, access_token, cancel_event)
                )
                for sub_id in unique_ids
            ]
            try:
                outcomes = await asyncio.gather(*tasks)
            except BaseException:
                # Cancellation: stop sibling fetches before the client closes
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise

        result = FetchResult()
        for sub_id, (resources, skipped, error) in zip(unique_ids, outcomes):
            result.skipped_rows += skipped
            if error is not None:
                result.errors.append(error)
            else:
                result.succeeded_subscriptions.append(sub_id)
                result.resources.extend(resources)

        logger.info(
            f"Inventory fetch finished: {len(result.resources)} resources from "
            f"{len(result.succeeded_subscriptions)}/{len(unique_ids)} subscriptions"
        )
        return result

    async def _fetch_subscription(
        self,
        client: httpx.AsyncClient,
        semaphore: asyncio.Semaphore,
        subscription_id: str,
        access_token: str,
        cancel_event: asyncio.Event | None,
    ) -> tuple[list[ResourceSnapshot], int, SubscriptionError | None]:
        resources: list[ResourceSnapshot] = []
        skipped = 0

        async with semaphore:
            skip_token = None
            page = 0
            try:
                while True:
                    if cancel_event is not None and cancel_event.is_set():
                        raise AssessmentCancelledError("Inventory fetch cancelled")

                    data = await call_with_retry(
                        self._query,
                        client,
                        access_token,
                        [subscription_id],
                        INVENTORY_QUERY,
                        skip_token=skip_token,
                        top=self.settings.resource_graph_page_size,
                        policy=self.retry_policy,
                        sleep=self._sleep,
                        description=f"resource graph query ({subscription_id[:8]}...)",
                    )
                    page += 1

                    for row in data.get("data") or []:
                        try:
                            resources.append(ResourceSnapshot.from_graph_row(row, subscription_id))
                        except ValueError as e:
                            skipped += 1
                            logger.warning(f"Skipping malformed resource in {subscription_id}: {e}")

                    skip_token = data.get("$skipToken")
                    if not skip_token:
                        break
            except AssessmentCancelledError:
                raise
            except (httpx.HTTPError, ValueError) as e:
                reason, status_code = classify_fetch_error(e)
                if reason == FailureReason.INSUFFICIENT_PERMISSION.value:
                    logger.warning(
                        f"Access denied to subscription {subscription_id}: {e}. Missing Reader role?"
                    )
                else:
                    logger.error(f"Inventory fetch failed for subscription {subscription_id} ({reason}): {e}")
                return [], skipped, SubscriptionError(
                    subscription_id=subscription_id,
                    reason=reason,
                    message=str(e),
                    status_code=status_code,
                )

        logger.debug(f"Subscription {subscription_id}: {len(resources)} resources in {page} pages")
        return resources, skipped, None

    async def test_connection(self, subscription_ids: list[str], access_token: str) -> bool:
        """Cheap existence/auth check. Never mutates state.

        Authorization failures return False without retrying; connectivity
        failures and timeouts also return False.
        """
        if not subscription_ids:
            return False

        try:
            async with self._client() as client:
                await self._query(client, access_token, list(subscription_ids), CONNECTION_TEST_QUERY)
            return True
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in (401, 403):
                logger.warning(f"Connection test rejected ({status}) for {len(subscription_ids)} subscriptions")
            else:
                logger.error(f"Connection test failed with HTTP {status}: {e}")
            return False
        except httpx.HTTPError as e:
            kind = "transient" if is_retryable_error(e) else "permanent"
            logger.error(f"Connection test failed ({kind}): {e}")
            return False
