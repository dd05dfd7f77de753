"""Remote state reads against the APIM management plane.

Every call goes through the synchronous Azure SDK in the default executor
and is bounded by a timeout. SDK exceptions are translated into RemoteError
at this boundary so callers only branch on the error kind.
"""

from __future__ import annotations

import asyncio
import functools
import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
)
from azure.mgmt.apimanagement import ApiManagementClient

from .config import DEFAULT_REMOTE_TIMEOUT_SECONDS, MAX_LISTED_APIS
from .models import RemoteApiSnapshot, ServiceRef

logger = logging.getLogger(__name__)

# Revisions are listed as "<apiId>;rev=<n>"
REVISION_MARKER = ";rev="

TRANSIENT_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504})
UNAUTHENTICATED_STATUS_CODES = frozenset({401, 403})


class RemoteErrorKind(str, Enum):
    """Categories of remote failures."""

    UNAUTHENTICATED = "unauthenticated"
    NOT_FOUND = "not-found"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class RemoteError(Exception):
    """A failed call against the remote APIM service."""

    def __init__(
        self,
        kind: RemoteErrorKind,
        message: str,
        *,
        operation: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.operation = operation
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        return self.kind == RemoteErrorKind.TRANSIENT


def classify_azure_error(error: BaseException, operation: str) -> RemoteError:
    """Translate an SDK or timeout exception into a RemoteError."""
    message = f"{operation} failed: {getattr(error, 'message', None) or error}"

    match error:
        case TimeoutError():
            return RemoteError(
                RemoteErrorKind.TRANSIENT, f"{operation} timed out", operation=operation
            )
        case ClientAuthenticationError():
            return RemoteError(
                RemoteErrorKind.UNAUTHENTICATED,
                message,
                operation=operation,
                status_code=error.status_code,
            )
        case ResourceNotFoundError():
            return RemoteError(
                RemoteErrorKind.NOT_FOUND, message, operation=operation, status_code=404
            )
        case HttpResponseError():
            status = error.status_code
            if status in UNAUTHENTICATED_STATUS_CODES:
                kind = RemoteErrorKind.UNAUTHENTICATED
            elif status == 404:
                kind = RemoteErrorKind.NOT_FOUND
            elif status is None or status in TRANSIENT_STATUS_CODES or status >= 500:
                kind = RemoteErrorKind.TRANSIENT
            else:
                kind = RemoteErrorKind.PERMANENT
            return RemoteError(kind, message, operation=operation, status_code=status)
        case AzureError():
            # Connection and stream errors carry no status
            return RemoteError(RemoteErrorKind.TRANSIENT, message, operation=operation)
        case _:
            return RemoteError(RemoteErrorKind.PERMANENT, message, operation=operation)


@dataclass
class RemoteBaseline:
    """Snapshot of deployed APIs taken at the start of a run.

    ``available`` is False when the listing failed; callers then treat
    every definition as needing deployment.
    """

    snapshots: dict[str, RemoteApiSnapshot] = field(default_factory=dict)
    available: bool = True
    error: str | None = None

    def __contains__(self, api_id: object) -> bool:
        return api_id in self.snapshots

    def unmanaged(self, declared: set[str]) -> list[str]:
        """Deployed API ids that no definition declares."""
        return sorted(set(self.snapshots) - declared)


class ApiManagementReader:
    """Read and delete operations on one APIM service.

    SECURITY: Timeouts are enforced on all Azure API calls to prevent
    indefinite hangs.
    """

    def __init__(
        self,
        credential: TokenCredential,
        service: ServiceRef,
        *,
        timeout_seconds: int = DEFAULT_REMOTE_TIMEOUT_SECONDS,
    ) -> None:
        self._service = service
        self._timeout_seconds = timeout_seconds
        self._client = ApiManagementClient(
            credential=credential,
            subscription_id=service.subscription_id,
        )

    @property
    def service(self) -> ServiceRef:
        return self._service

    async def _call(
        self,
        operation: str,
        func: Callable[..., Any],
        *args: Any,
        timeout_seconds: int | None = None,
        **kwargs: Any,
    ) -> Any:
        """Run a blocking SDK call in the executor with a timeout.

        Raises:
            RemoteError: On any SDK failure or timeout.
        """
        loop = asyncio.get_running_loop()
        timeout = timeout_seconds or self._timeout_seconds
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, functools.partial(func, *args, **kwargs)),
                timeout=timeout,
            )
        except TimeoutError as e:
            logger.warning(
                f"{operation} timed out",
                extra={"service": self._service.service_name, "timeout_seconds": timeout},
            )
            raise classify_azure_error(e, operation) from e
        except AzureError as e:
            raise classify_azure_error(e, operation) from e

    async def list_deployed(self) -> list[RemoteApiSnapshot]:
        """List current (non-revision) APIs on the service.

        Raises:
            RemoteError: If the listing fails.
        """
        rg = self._service.resource_group
        name = self._service.service_name

        def fetch() -> list[Any]:
            # Paging happens while iterating, so iterate inside the executor
            pages = self._client.api.list_by_service(rg, name)
            return list(itertools.islice(pages, MAX_LISTED_APIS + 1))

        contracts = await self._call("List APIs", fetch)
        if len(contracts) > MAX_LISTED_APIS:
            logger.warning(
                "API listing truncated",
                extra={"service": name, "max_apis": MAX_LISTED_APIS},
            )
            contracts = contracts[:MAX_LISTED_APIS]

        snapshots = [
            RemoteApiSnapshot.from_contract(c)
            for c in contracts
            if c.name and REVISION_MARKER not in c.name
        ]
        logger.debug("Listed deployed APIs", extra={"service": name, "count": len(snapshots)})
        return snapshots

    async def get_one(self, api_id: str) -> RemoteApiSnapshot | None:
        """Fetch one API; None when it does not exist.

        Raises:
            RemoteError: For failures other than not-found.
        """
        try:
            contract = await self._call(
                f"Get API '{api_id}'",
                self._client.api.get,
                self._service.resource_group,
                self._service.service_name,
                api_id,
            )
        except RemoteError as e:
            if e.kind == RemoteErrorKind.NOT_FOUND:
                return None
            raise
        return RemoteApiSnapshot.from_contract(contract)

    async def service_exists(self) -> bool:
        """Check that the APIM service itself exists."""
        try:
            await self._call(
                "Get APIM service",
                self._client.api_management_service.get,
                self._service.resource_group,
                self._service.service_name,
            )
        except RemoteError as e:
            if e.kind == RemoteErrorKind.NOT_FOUND:
                return False
            raise
        return True

    async def deleted_service_exists(self, location: str) -> bool:
        """Check for a soft-deleted instance of this service in ``location``."""
        try:
            await self._call(
                "Get soft-deleted APIM service",
                self._client.deleted_services.get_by_name,
                self._service.service_name,
                location,
            )
        except RemoteError as e:
            if e.kind == RemoteErrorKind.NOT_FOUND:
                return False
            raise
        return True

    async def purge_deleted_service(self, location: str, *, timeout_seconds: int) -> None:
        """Permanently remove a soft-deleted instance so its name can be reused.

        Raises:
            RemoteError: If the purge fails or times out.
        """
        name = self._service.service_name

        def purge() -> None:
            self._client.deleted_services.begin_purge(name, location).result()

        await self._call(
            f"Purge soft-deleted APIM service '{name}'", purge, timeout_seconds=timeout_seconds
        )

    async def get_service_sku(self) -> str | None:
        """Read the SKU name of the APIM service."""
        service = await self._call(
            "Get APIM service",
            self._client.api_management_service.get,
            self._service.resource_group,
            self._service.service_name,
        )
        sku = getattr(service, "sku", None)
        return getattr(sku, "name", None)

    async def product_exists(self, product_id: str) -> bool:
        try:
            await self._call(
                f"Get product '{product_id}'",
                self._client.product.get,
                self._service.resource_group,
                self._service.service_name,
                product_id,
            )
        except RemoteError as e:
            if e.kind == RemoteErrorKind.NOT_FOUND:
                return False
            raise
        return True

    async def gateway_exists(self, gateway_id: str) -> bool:
        try:
            await self._call(
                f"Get gateway '{gateway_id}'",
                self._client.gateway.get,
                self._service.resource_group,
                self._service.service_name,
                gateway_id,
            )
        except RemoteError as e:
            if e.kind == RemoteErrorKind.NOT_FOUND:
                return False
            raise
        return True

    async def delete_api(self, api_id: str) -> None:
        """Delete an API and all of its revisions.

        Raises:
            RemoteError: If the delete fails (kind not-found if already gone).
        """
        await self._call(
            f"Delete API '{api_id}'",
            self._client.api.delete,
            self._service.resource_group,
            self._service.service_name,
            api_id,
            if_match="*",
            delete_revisions=True,
        )


async def load_baseline(reader: ApiManagementReader) -> RemoteBaseline:
    """Take the start-of-run snapshot, tolerating listing failures.

    Authentication failures stay fatal; anything else yields an
    unavailable baseline so the run can still converge.

    Raises:
        RemoteError: If the caller is not authenticated.
    """
    try:
        snapshots = await reader.list_deployed()
    except RemoteError as e:
        if e.kind == RemoteErrorKind.UNAUTHENTICATED:
            raise
        logger.warning(
            "Could not list deployed APIs, continuing with an empty baseline",
            extra={"error": str(e), "kind": e.kind.value},
        )
        return RemoteBaseline(available=False, error=str(e))

    return RemoteBaseline(snapshots={s.api_id: s for s in snapshots})
