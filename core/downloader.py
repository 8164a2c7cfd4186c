"""
Bounded-size URL downloader for page sources.

Streams a remote resource to a local file and stops once a byte cap is
reached. Hitting the cap is not an error by itself: the result reports
whether the source ended under the cap, exactly at it, or had more data
available, and the caller decides what truncation means.

Usage:
    from core.downloader import download_file, FetchStatus

    result = download_file('/tmp/pages.json', url, max_size=1_000_000)
    if result.status is FetchStatus.TRUNCATED:
        ...
"""

import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
CHUNK_SIZE = 8192  # 8KB chunks


class UpstreamFetchError(Exception):
    """Fetching the source document failed."""

    def __init__(self, message: str, url: str = None):
        super().__init__(message)
        self.url = url


class FetchStatus(Enum):
    """How the download ended relative to the byte cap."""
    UNDER_CAP = 'under_cap'    # source ended before the cap
    COMPLETE = 'complete'      # source ended exactly at the cap
    TRUNCATED = 'truncated'    # more data was available past the cap


@dataclass
class FetchResult:
    status: FetchStatus
    bytes_written: int

    @property
    def truncated(self) -> bool:
        return self.status is FetchStatus.TRUNCATED


class URLDownloader:
    """Downloader for source documents over http(s)"""

    def __init__(self, max_retries: int = 2, timeout: int = DEFAULT_TIMEOUT):
        """
        Initialize downloader

        Args:
            max_retries: Retry attempts for connection errors and 5xx responses
            timeout: Request timeout in seconds
        """
        self.timeout = timeout
        self.session = requests.Session()

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=0.5,
            status_forcelist=[500, 502, 503, 504],
            allowed_methods=["GET", "HEAD"]
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _validate_url(self, url: str) -> None:
        parsed = urlparse(url or '')
        if parsed.scheme not in ('http', 'https'):
            raise UpstreamFetchError(
                f"Invalid URL scheme: {parsed.scheme!r}. Only http/https allowed.", url=url
            )
        if not parsed.netloc:
            raise UpstreamFetchError("Invalid URL: missing hostname", url=url)

    def download(self, target_path, url: str, max_size: int) -> FetchResult:
        """
        Download ``url`` into ``target_path``, reading at most ``max_size`` bytes.

        Args:
            target_path: Destination file
            url: Source URL
            max_size: Byte cap

        Returns:
            FetchResult with the outcome and number of bytes written

        Raises:
            UpstreamFetchError: On invalid URL, network error or HTTP error status
        """
        if max_size < 0:
            raise ValueError('max_size must not be negative')

        self._validate_url(url)
        target_path = Path(target_path)
        temp_path = target_path.with_name(target_path.name + '.part')

        logger.debug(f"Downloading {url} (max {max_size} bytes)")
        start_time = time.time()
        written = 0
        truncated = False

        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()

                with open(temp_path, 'wb') as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if not chunk:  # keep-alive
                            continue
                        remaining = max_size - written
                        if len(chunk) > remaining:
                            f.write(chunk[:remaining])
                            written += remaining
                            truncated = True
                            break
                        f.write(chunk)
                        written += len(chunk)

            os.replace(temp_path, target_path)

        except requests.RequestException as e:
            raise UpstreamFetchError(f"Download failed: {e}", url=url) from e

        except OSError as e:
            raise UpstreamFetchError(f"Could not write {target_path}: {e}", url=url) from e

        finally:
            if temp_path.exists():
                temp_path.unlink()

        if truncated:
            status = FetchStatus.TRUNCATED
        elif written == max_size:
            status = FetchStatus.COMPLETE
        else:
            status = FetchStatus.UNDER_CAP

        logger.info(
            f"Downloaded {written} bytes from {url} in {time.time() - start_time:.2f}s "
            f"({status.value})"
        )
        return FetchResult(status=status, bytes_written=written)

    def close(self):
        """Close the session"""
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def download_file(target_path, url: str, max_size: int, timeout: int = DEFAULT_TIMEOUT) -> FetchResult:
    """Download with a short-lived URLDownloader. See URLDownloader.download."""
    with URLDownloader(timeout=timeout) as downloader:
        return downloader.download(target_path, url, max_size)
