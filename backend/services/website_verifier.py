"""
Website verifier - cheap reachability check for staged vendor websites.

HEAD first, falling back once to GET when the HEAD request itself raises.
Each attempt is bounded as a whole by the verify timeout, on top of
httpx's per-phase timeouts. Servers that answer 403/405 (bot or HEAD
blocking) or 301/302 are alive, so they count as valid.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

import httpx

from config import settings
from models.vendor import WebsiteVerification
from services.cancellation import CancellationToken

logger = logging.getLogger("vendor_discovery")

VERIFY_CONCURRENCY = 5
VERIFY_MAX_PER_RUN = 50
LIVE_NON_2XX_STATUSES = {301, 302, 403, 405}

HEADERS = {
    "User-Agent": "VendorDiscovery Website Verification Bot",
}

RecordFn = Callable[[str, WebsiteVerification], Awaitable[None]]


@dataclass
class VerificationSummary:
    verified: int = 0
    failed: int = 0
    skipped: int = 0
    deferred: int = 0

    def as_dict(self) -> dict:
        return {
            "verified": self.verified,
            "failed": self.failed,
            "skipped": self.skipped,
            "deferred": self.deferred,
        }


def normalize_url(url: str) -> str:
    url = url.strip()
    if not url.startswith(("http://", "https://")):
        url = f"https://{url}"
    return url


def classify_status(status_code: int) -> WebsiteVerification:
    if 200 <= status_code < 300 or status_code in LIVE_NON_2XX_STATUSES:
        return WebsiteVerification.VALID
    return WebsiteVerification.INVALID


class WebsiteVerifier:
    def __init__(
        self,
        timeout_seconds: Optional[float] = None,
        concurrency: int = VERIFY_CONCURRENCY,
    ):
        self._timeout = timeout_seconds or settings.WEBSITE_VERIFY_TIMEOUT_SECONDS
        self._concurrency = max(1, concurrency)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._timeout,
            follow_redirects=True,
            headers=HEADERS,
        )

    async def verify(self, url: Optional[str]) -> WebsiteVerification:
        """Check a single URL with a dedicated client."""
        if not url or not url.strip():
            return WebsiteVerification.NO_URL
        async with self._client() as client:
            return await self._check(client, url)

    async def _check(self, client: httpx.AsyncClient, url: str) -> WebsiteVerification:
        if not url or not url.strip():
            return WebsiteVerification.NO_URL

        target = normalize_url(url)
        start = time.time()
        try:
            try:
                response = await asyncio.wait_for(client.head(target), self._timeout)
            except Exception as head_error:
                logger.debug(
                    "HEAD failed, retrying with GET",
                    extra={"event": "verify_head_failed", "url": target, "error": str(head_error)},
                )
                response = await asyncio.wait_for(client.get(target), self._timeout)
        except Exception as e:
            logger.info(
                "Website unreachable",
                extra={
                    "event": "verify_error",
                    "url": target,
                    "error": str(e) or type(e).__name__,
                    "duration_ms": round((time.time() - start) * 1000, 2),
                },
            )
            return WebsiteVerification.ERROR

        result = classify_status(response.status_code)
        logger.debug(
            "Website checked",
            extra={
                "event": "verify_complete",
                "url": target,
                "status_code": response.status_code,
                "result": result.value,
                "duration_ms": round((time.time() - start) * 1000, 2),
            },
        )
        return result

    async def verify_batch(
        self,
        vendors: Sequence[Tuple[str, Optional[str]]],
        record: RecordFn,
        cancel_token: Optional[CancellationToken] = None,
    ) -> VerificationSummary:
        """
        Verify (vendor_id, url) pairs in windows of `concurrency` requests.

        Every outcome is passed to `record` individually. A failure for one
        vendor (including a failing `record` call) marks that vendor as
        error and never aborts the rest of its window. A signalled cancel
        token stops before the next window; the remaining vendors are
        counted as deferred.
        """
        summary = VerificationSummary()
        if not vendors:
            return summary

        async with self._client() as client:
            for offset in range(0, len(vendors), self._concurrency):
                if cancel_token is not None and cancel_token.cancelled:
                    summary.deferred += len(vendors) - offset
                    logger.warning(
                        "Website verification aborted by cancellation",
                        extra={"event": "verify_batch_cancelled", "deferred": summary.deferred},
                    )
                    break

                window = vendors[offset:offset + self._concurrency]
                outcomes = await asyncio.gather(
                    *(self._verify_and_record(client, vendor_id, url, record) for vendor_id, url in window),
                    return_exceptions=True,
                )

                for (vendor_id, url), outcome in zip(window, outcomes):
                    if isinstance(outcome, BaseException):
                        summary.failed += 1
                        logger.warning(
                            "Website verification error",
                            extra={"event": "verify_vendor_failed", "vendor_id": vendor_id, "url": url, "error": str(outcome)},
                        )
                        await self._record_error(vendor_id, record)
                    elif outcome == WebsiteVerification.VALID:
                        summary.verified += 1
                    elif outcome == WebsiteVerification.NO_URL:
                        summary.skipped += 1
                    else:
                        summary.failed += 1
                        logger.info(
                            "Website verification failed",
                            extra={"event": "verify_vendor_invalid", "vendor_id": vendor_id, "url": url, "result": outcome.value},
                        )

        return summary

    async def _verify_and_record(
        self,
        client: httpx.AsyncClient,
        vendor_id: str,
        url: Optional[str],
        record: RecordFn,
    ) -> WebsiteVerification:
        result = await self._check(client, url or "")
        await record(vendor_id, result)
        return result

    @staticmethod
    async def _record_error(vendor_id: str, record: RecordFn):
        try:
            await record(vendor_id, WebsiteVerification.ERROR)
        except Exception as e:
            logger.error(
                "Could not record verification error",
                extra={"event": "verify_record_failed", "vendor_id": vendor_id, "error": str(e)},
            )


def cap_pending(vendors: List, limit: int = VERIFY_MAX_PER_RUN) -> Tuple[List, int]:
    """Split pending vendors into (this run's batch, deferred count)."""
    return list(vendors[:limit]), max(0, len(vendors) - limit)
