"""
HTTP client for the progress service (the Progress Oracle).
"""

from typing import Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from shared.logging import get_logger
from shared.errors import ExternalServiceError
from shared.circuit_breaker import CircuitBreaker
from shared.retry import retry_on_exception, RetryConfig
from .base import ProgressOracle, UserContextPayload
from ..rules.models import UserContext


class HttpProgressOracle(ProgressOracle):
    """Reads ``GET /progress/courses/{course_id}/users/{user_id}/context``."""

    def __init__(self, base_url: str, timeout: float = 2.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.logger = get_logger("gating.progress_client")
        self._client = client
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30.0,
            expected_exception=ExternalServiceError,
            name="progress_service"
        )

    async def start(self):
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)

    async def stop(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def get_user_context(self, user_id: str, course_id: str) -> UserContext:
        payload = await self.circuit_breaker.call(self._fetch_context, user_id, course_id)
        return payload.to_context()

    @retry_on_exception((httpx.TransportError,), config=RetryConfig(max_attempts=2, base_delay=0.05))
    async def _get(self, path: str) -> httpx.Response:
        if self._client is None:
            await self.start()
        return await self._client.get(path)

    async def _fetch_context(self, user_id: str, course_id: str) -> UserContextPayload:
        path = f"/progress/courses/{course_id}/users/{user_id}/context"
        try:
            response = await self._get(path)
        except httpx.HTTPError as e:
            self.logger.error("Progress service HTTP error", user_id=user_id, course_id=course_id, error=str(e))
            raise ExternalServiceError("progress_service", str(e)) from e

        if response.status_code != 200:
            self.logger.error(
                "Progress service returned an error",
                user_id=user_id,
                course_id=course_id,
                status_code=response.status_code
            )
            raise ExternalServiceError(
                "progress_service",
                f"unexpected status {response.status_code}",
                {"status_code": response.status_code}
            )

        try:
            return UserContextPayload.model_validate(response.json())
        except (ValueError, PydanticValidationError) as e:
            raise ExternalServiceError("progress_service", "malformed user context") from e

    async def health_check(self) -> bool:
        try:
            if self._client is None:
                await self.start()
            response = await self._client.get("/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False
