"""Base REST client for the Hearth backend services"""

from typing import Any, Dict, Optional, Type, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from shared.errors import ErrorCode, HomeException, NotFoundError, ServiceRejectedError, TransientIOError

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class ServiceNotConfiguredError(HomeException):
    """Raised when a service URL is not configured but a method is called."""

    def __init__(self, service: str):
        super().__init__(
            ErrorCode.NOT_CONFIGURED,
            f"{service} is not configured. Set its URL in the environment "
            "or run with HEARTH_BACKEND=memory.",
            503,
            service
        )
        self.service = service


class ServiceClient:
    """Thin httpx wrapper shared by the inventory and device store clients.

    Every failure leaves as a HomeException: transport failures and 5xx
    answers become TransientIOError, 404 becomes NotFoundError, and any other
    4xx or an unparseable body becomes ServiceRejectedError with the HTTP
    status in ``detail``.
    """

    service_name = "service"

    def __init__(self, url: str, token: Optional[str] = None, timeout: float = 10.0):
        self.url = url or ""
        self.token = token or ""
        self._disabled = not self.url

        if self._disabled:
            logger.warning("service_not_configured", service=self.service_name)
            self.headers = {}
            self.client = None
        else:
            self.headers = {"Content-Type": "application/json"}
            if self.token:
                self.headers["Authorization"] = f"Bearer {self.token}"
            self.client = httpx.AsyncClient(
                base_url=self.url,
                headers=self.headers,
                timeout=timeout
            )

    def _check_configured(self) -> None:
        if self._disabled:
            raise ServiceNotConfiguredError(self.service_name)

    @property
    def is_configured(self) -> bool:
        return not self._disabled

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Any:
        self._check_configured()
        try:
            response = await self.client.request(method, path, json=json, params=params)
        except httpx.RequestError as e:
            logger.warning(
                "service_request_failed",
                service=self.service_name,
                method=method,
                path=path,
                error=str(e)
            )
            raise TransientIOError(self.service_name, detail=str(e))

        if response.status_code == 404:
            raise NotFoundError(f"{self.service_name} resource not found", detail=path)
        if response.status_code >= 500:
            logger.warning(
                "service_unavailable",
                service=self.service_name,
                path=path,
                status_code=response.status_code
            )
            raise TransientIOError(self.service_name, detail=f"HTTP {response.status_code}")
        if response.status_code >= 400:
            logger.error(
                "service_rejected_request",
                service=self.service_name,
                method=method,
                path=path,
                status_code=response.status_code
            )
            raise ServiceRejectedError(self.service_name, detail=f"HTTP {response.status_code}")

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ServiceRejectedError(self.service_name, detail=f"invalid JSON: {e}")

    def _validate(self, model: Type[ModelT], data: Any) -> ModelT:
        """Parse a response body, mapping schema mismatches to ServiceRejectedError."""
        try:
            return model.model_validate(data)
        except ValidationError as e:
            logger.error("service_response_invalid", service=self.service_name, model=model.__name__, error=str(e))
            raise ServiceRejectedError(self.service_name, detail=f"invalid {model.__name__}")

    async def health_check(self) -> bool:
        """Return True when the service answers its health endpoint."""
        if self._disabled:
            return False
        try:
            response = await self.client.get("/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def close(self):
        """Close the underlying HTTP client."""
        if self.client:
            await self.client.aclose()
