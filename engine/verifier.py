"""Verification client for the external mailbox-existence service.

One address per call. Transport failures, timeouts and non-2xx responses are
retried with exponential backoff; exhaustion degrades to an ``invalid``
outcome with ``mx``/``provider`` set to "error" instead of raising. Retry
lives here and nowhere else.
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from .config import DEFAULT_VERIFY_API_URL
from .errors import TransientExternalError
from .models import VerificationOutcome, VerificationStatus
from .syntax import clean, is_placeholder_address

logger = logging.getLogger("listverify.verifier")

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_ATTEMPTS = 3
BACKOFF_BASE_SECONDS = 1.0
BACKOFF_CAP_SECONDS = 5.0

ERROR_MARKER = "error"


def backoff_delay(
    attempt: int,
    base: float = BACKOFF_BASE_SECONDS,
    cap: float = BACKOFF_CAP_SECONDS,
) -> float:
    """Seconds to wait after failed attempt ``attempt`` (0-based)."""
    return min((2 ** attempt) * base, cap)


def exhausted_outcome(address: str) -> VerificationOutcome:
    return VerificationOutcome(
        address=address,
        status=VerificationStatus.invalid,
        mx=ERROR_MARKER,
        provider=ERROR_MARKER,
    )


def _parse_status(raw) -> VerificationStatus:
    value = clean(raw).lower()
    if value == "valid":
        return VerificationStatus.valid
    if value == "invalid":
        return VerificationStatus.invalid
    return VerificationStatus.unverifiable


class VerificationClient:
    """Async client for ``GET {api_url}?email=<address>``.

    The aiohttp session is created lazily and owned by the client unless one
    is passed in. Use as an async context manager to close it.
    """

    def __init__(
        self,
        api_url: str = DEFAULT_VERIFY_API_URL,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = BACKOFF_BASE_SECONDS,
        backoff_cap: float = BACKOFF_CAP_SECONDS,
        session: Optional[aiohttp.ClientSession] = None,
        sleep_fn=None,
    ):
        self._api_url = api_url
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base
        self._backoff_cap = backoff_cap
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep_fn or asyncio.sleep

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "VerificationClient":
        return cls(
            settings.verify_api_url,
            timeout_seconds=settings.verify_timeout_seconds,
            max_attempts=settings.verify_max_attempts,
            backoff_base=settings.backoff_base_seconds,
            backoff_cap=settings.backoff_cap_seconds,
            **kwargs,
        )

    async def __aenter__(self) -> "VerificationClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def _fetch(self, address: str) -> dict:
        """Single service call. Raises TransientExternalError on any failure."""
        session = self._get_session()
        try:
            async with session.get(
                self._api_url,
                params={"email": address},
                timeout=self._timeout,
            ) as resp:
                if resp.status != 200:
                    text = (await resp.text())[:200]
                    raise TransientExternalError(f"status={resp.status} body={text}")
                return await resp.json(content_type=None)
        except TransientExternalError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise TransientExternalError(str(e) or type(e).__name__) from e

    async def verify(self, address: str) -> VerificationOutcome:
        """Verify one address. Never raises for service or transport failures."""
        if is_placeholder_address(address):
            return VerificationOutcome(address=address, status=VerificationStatus.invalid)

        address = clean(address)
        for attempt in range(self._max_attempts):
            try:
                payload = await self._fetch(address)
            except TransientExternalError as e:
                logger.warning(
                    "Verification attempt %d/%d failed for %s: %s",
                    attempt + 1, self._max_attempts, address, e,
                )
                if attempt + 1 < self._max_attempts:
                    await self._sleep(backoff_delay(attempt, self._backoff_base, self._backoff_cap))
                continue

            payload = payload if isinstance(payload, dict) else {}
            return VerificationOutcome(
                address=address,
                status=_parse_status(payload.get("email_status")),
                mx=clean(payload.get("email_mx")),
                provider=clean(payload.get("provider")),
            )

        logger.error("Verification retries exhausted for %s", address)
        return exhausted_outcome(address)
