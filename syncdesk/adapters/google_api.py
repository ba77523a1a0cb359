"""
Async execution of googleapiclient requests.

googleapiclient is blocking, so every request runs in a worker thread under a
timeout. Provider responses are mapped onto the package error taxonomy:

- 401                      -> AuthExpired
- 429 / rateLimitExceeded  -> retried with backoff, then ProviderRateLimited
- 5xx, timeout, transport  -> ProviderUnavailable
- anything else            -> the original HttpError
"""

import asyncio
import logging
from typing import Any, Callable, Optional, Sequence

from google.auth.exceptions import TransportError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from syncdesk.config import Config
from syncdesk.errors import AuthExpired, ProviderRateLimited, ProviderUnavailable

logger = logging.getLogger(__name__)

RATE_LIMIT_REASONS = ("rateLimitExceeded", "userRateLimitExceeded")


def build_service(api: str, version: str, access_token: str):
    """Discovery client authorized with a bare access token (refresh is TokenManager's job)."""
    return build(api, version, credentials=Credentials(token=access_token), cache_discovery=False)


def _status(error: HttpError) -> int:
    return int(getattr(error.resp, "status", 0) or 0)


def is_rate_limited(error: HttpError) -> bool:
    status = _status(error)
    if status == 429:
        return True
    return status == 403 and any(reason in str(error.content) for reason in RATE_LIMIT_REASONS)


async def execute(
    request_factory: Callable[[], Any],
    *,
    label: str,
    timeout: Optional[float] = None,
    retry_delays: Optional[Sequence[float]] = None,
) -> Any:
    """
    Run `request_factory().execute()` off the event loop.

    Args:
        request_factory: Builds the googleapiclient request (called once per attempt)
        label: Short description used in logs and error messages
        timeout: Per-attempt timeout in seconds (default: Config.HTTP_TIMEOUT_SECONDS)
        retry_delays: Backoff delays for rate-limited attempts (default: Config.PROVIDER_RETRY_DELAYS)
    """
    timeout = timeout if timeout is not None else Config.HTTP_TIMEOUT_SECONDS
    delays = tuple(retry_delays if retry_delays is not None else Config.PROVIDER_RETRY_DELAYS)

    for attempt in range(len(delays) + 1):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(lambda: request_factory().execute()),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise ProviderUnavailable(f"{label} timed out after {timeout}s") from e
        except (TransportError, OSError) as e:
            raise ProviderUnavailable(f"{label} failed: {e}") from e
        except HttpError as e:
            status = _status(e)
            if status == 401:
                raise AuthExpired(f"{label} rejected the access token") from e
            if is_rate_limited(e):
                if attempt < len(delays):
                    logger.warning(f"[GOOGLE-API] {label} rate limited, retry {attempt + 1}/{len(delays)} after {delays[attempt]}s")
                    await asyncio.sleep(delays[attempt])
                    continue
                raise ProviderRateLimited(f"{label} is rate limited", retry_after=delays[-1] if delays else None) from e
            if status >= 500:
                raise ProviderUnavailable(f"{label} failed with HTTP {status}") from e
            raise
