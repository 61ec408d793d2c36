"""Source download with a time limit and a hard size cap."""

import logging
import time

import requests

from integrations.errors import FetchError


DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko)",
}

CHUNK_SIZE = 64 * 1024


class SourceFetcher:
    def __init__(self, timeout: int = 45, max_bytes: int = 500 * 1024 * 1024, session=None) -> None:
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.session = session or requests.Session()

    def fetch(self, url: str) -> bytes:
        """Download ``url`` fully into memory.

        Raises FetchError on non-2xx responses, network failures, and bodies
        larger than ``max_bytes``. Oversized bodies are rejected, never
        truncated. ``timeout`` bounds the whole download, not just each read.
        """
        logging.info("Fetching source: %s", url)
        deadline = time.monotonic() + self.timeout
        try:
            with self.session.get(url, headers=DEFAULT_HEADERS, timeout=self.timeout, stream=True) as response:
                if not 200 <= response.status_code < 300:
                    raise FetchError(f"Source returned HTTP {response.status_code}")

                declared = response.headers.get("Content-Length")
                if declared and declared.isdigit() and int(declared) > self.max_bytes:
                    raise FetchError(
                        f"Source too large: {int(declared)} bytes (limit {self.max_bytes})"
                    )

                chunks = []
                received = 0
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if time.monotonic() > deadline:
                        raise FetchError(f"Timed out fetching source after {self.timeout}s")
                    received += len(chunk)
                    if received > self.max_bytes:
                        raise FetchError(f"Source exceeds limit of {self.max_bytes} bytes")
                    chunks.append(chunk)
        except requests.Timeout as exc:
            raise FetchError(f"Timed out fetching source after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise FetchError(f"Failed to fetch source: {exc}") from exc

        data = b"".join(chunks)
        logging.info("Fetched %d bytes from %s", len(data), url)
        return data
