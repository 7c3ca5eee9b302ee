# src/mci_registry/services/sources.py
"""
Payload sources: where ingestion gets bytes from when the caller sends a
`source_url` instead of a payload.

Accepted forms:
- http:// and https:// URLs (downloaded with httpx)
- file:// URLs
- plain filesystem paths

Transient HTTP failures (transport errors, timeouts, 429, 5xx) are retried
with bounded exponential backoff; any other 4xx is final.
"""
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable
from urllib.parse import urlparse
from urllib.request import url2pathname

import httpx
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    stop_any,
    wait_exponential,
)

from mci_registry.errors import (
    FetchError,
    InvalidSourceError,
    UnsupportedSchemeError,
    ValidationError,
)
from mci_registry.schemas import DefinitionManifest, build

logger = logging.getLogger(__name__)

RETRY_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


@dataclass(frozen=True)
class Source:
    kind: str  # "http" or "file"
    location: str

    @classmethod
    def parse(cls, raw: str) -> "Source":
        """
        Classify a source string.

        Raises:
            InvalidSourceError: empty or unparsable input
            UnsupportedSchemeError: URL scheme other than http(s)/file
        """
        if raw is None or not raw.strip():
            raise InvalidSourceError(raw or "")
        if "://" not in raw:
            return cls("file", raw)

        try:
            parsed = urlparse(raw)
        except ValueError:
            raise InvalidSourceError(raw) from None

        scheme = parsed.scheme.lower()
        if scheme in ("http", "https"):
            if not parsed.netloc:
                raise InvalidSourceError(raw)
            return cls("http", raw)
        if scheme == "file":
            if parsed.netloc not in ("", "localhost"):
                raise InvalidSourceError(f"Cannot convert file URL to path: {raw}")
            return cls("file", url2pathname(parsed.path))
        if not scheme:
            raise InvalidSourceError(raw)
        raise UnsupportedSchemeError(scheme)

    @property
    def path(self) -> Path:
        return Path(self.location)


class _RetryableStatus(Exception):
    def __init__(self, status_code: int, url: str):
        super().__init__(f"HTTP {status_code} from {url}")
        self.status_code = status_code


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, (httpx.TransportError, _RetryableStatus))


def _stop_at(deadline: float, monotonic: Callable[[], float]) -> Callable:
    """Tenacity stop condition: no further attempts once deadline has passed."""

    def _stop(retry_state) -> bool:
        return monotonic() >= deadline

    return _stop


class SourceFetcher:
    """
    Downloads payload bytes. The httpx.Client is owned by the caller and
    carries the per-read timeout; this class adds retries, size limits and a
    wall-clock deadline for the whole HTTP fetch, retries included.
    """

    def __init__(
        self,
        http_client: httpx.Client,
        max_attempts: int = 4,
        backoff_initial_seconds: float = 0.2,
        backoff_max_seconds: float = 5.0,
        max_payload_bytes: int = 256 * 1024 * 1024,
        user_agent: str = "MCI/1.0",
        fetch_timeout_seconds: float = 30.0,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.http_client = http_client
        self.max_attempts = max_attempts
        self.backoff_initial_seconds = backoff_initial_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.max_payload_bytes = max_payload_bytes
        self.user_agent = user_agent
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.monotonic = monotonic

    def fetch(self, raw_source: str) -> bytes:
        """
        Fetch the bytes behind a source string.

        Raises:
            ValidationError: the source string is malformed
            FetchError: unreachable, rejected, or retry budget exhausted
        """
        source = Source.parse(raw_source)
        if source.kind == "http":
            return self._fetch_http(source.location)
        return self._fetch_file(source.path)

    def fetch_manifest(self, raw_source: str) -> DefinitionManifest:
        """Fetch and validate a JSON definition manifest."""
        content = self.fetch(raw_source)
        try:
            data = json.loads(content)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError(f"Failed to parse definition manifest JSON: {e}") from None
        if not isinstance(data, dict):
            raise ValidationError("Definition manifest must be a JSON object")
        return build(DefinitionManifest, data)

    # --- Backends ---

    def _fetch_file(self, path: Path) -> bytes:
        try:
            if path.is_dir():
                raise InvalidSourceError(f"Path is not a file: {path}")
            size = path.stat().st_size
            if size > self.max_payload_bytes:
                raise FetchError(f"Source {path} exceeds {self.max_payload_bytes} bytes")
            return path.read_bytes()
        except FileNotFoundError:
            raise FetchError(f"File does not exist: {path}") from None
        except PermissionError:
            raise FetchError(f"Permission denied reading {path}") from None

    def _fetch_http(self, url: str) -> bytes:
        deadline = self.monotonic() + self.fetch_timeout_seconds
        retrying = Retrying(
            stop=stop_any(
                stop_after_attempt(self.max_attempts), _stop_at(deadline, self.monotonic)
            ),
            wait=wait_exponential(
                multiplier=self.backoff_initial_seconds, max=self.backoff_max_seconds
            ),
            retry=retry_if_exception(_is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    return self._download(url, deadline)
        except _RetryableStatus as e:
            raise FetchError(
                f"Source {url} kept failing with HTTP {e.status_code} "
                f"after {self.max_attempts} attempts"
            ) from e
        except httpx.TimeoutException as e:
            raise FetchError(f"Timed out fetching {url}") from e
        except httpx.HTTPError as e:
            raise FetchError(f"Failed to fetch {url}: {type(e).__name__}") from e

    def _download(self, url: str, deadline: float) -> bytes:
        if self.monotonic() >= deadline:
            raise FetchError(f"Timed out fetching {url} after {self.fetch_timeout_seconds}s")
        with self.http_client.stream(
            "GET", url, headers={"User-Agent": self.user_agent}, follow_redirects=True
        ) as response:
            if response.status_code in RETRY_STATUS_CODES:
                raise _RetryableStatus(response.status_code, url)
            if response.status_code >= 400:
                raise FetchError(
                    f"Source rejected the request: HTTP {response.status_code} for {url}"
                )

            chunks = []
            received = 0
            for chunk in response.iter_bytes():
                received += len(chunk)
                if received > self.max_payload_bytes:
                    raise FetchError(f"Source {url} exceeds {self.max_payload_bytes} bytes")
                if self.monotonic() >= deadline:
                    raise FetchError(
                        f"Timed out fetching {url} after {self.fetch_timeout_seconds}s"
                    )
                chunks.append(chunk)
        logger.debug(f"Fetched {received} bytes from {url}")
        return b"".join(chunks)
