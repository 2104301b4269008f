"""
Streaming artifact download.

Bytes are written to a staging file beside the destination and renamed
into place only after the transfer completed and was checked, so the
destination path never holds a partial download.
"""

from __future__ import annotations

import http.client
import logging
import os
import tempfile
import threading
import urllib.error
import urllib.request
from typing import Callable

from .common import GrundleError
from .release_source import USER_AGENT

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class DownloadFailed(GrundleError):
    """
    Raised when an artifact could not be downloaded completely.

    Attributes:
        status: HTTP status code, if the server answered
        reason: Underlying I/O or transport error, if any
    """
    def __init__(
        self,
        message: str,
        status: int | None = None,
        reason: str | None = None,
        remediation: str | None = None,
    ):
        self.status = status
        self.reason = reason
        super().__init__(message, remediation=remediation)


class DownloadCancelled(DownloadFailed):
    """Raised when a download was cancelled through its cancel event."""
    pass


def _expected_length(response) -> int | None:
    value = response.headers.get("Content-Length")
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def fetch(
    url: str,
    dest_path: str,
    timeout: int = 30,
    chunk_size: int = CHUNK_SIZE,
    cancel: threading.Event | None = None,
    on_progress: Callable[[int, int | None], None] | None = None,
) -> int:
    """
    Download url to dest_path.

    Args:
        url: Asset URL
        dest_path: Final file path
        timeout: Socket timeout in seconds
        chunk_size: Bytes read per iteration
        cancel: Event that aborts the transfer when set
        on_progress: Called with (bytes_written, total_or_None) after each chunk

    Returns:
        Number of bytes written

    Raises:
        DownloadFailed: On non-2xx status, transport/I/O error or short read
        DownloadCancelled: If cancel was set during the transfer
    """
    parent = os.path.dirname(os.path.abspath(dest_path))
    try:
        os.makedirs(parent, exist_ok=True)
        fd, staging_path = tempfile.mkstemp(
            prefix=f".{os.path.basename(dest_path)}.part-", dir=parent
        )
    except OSError as e:
        raise DownloadFailed(
            f"Cannot create staging file in {parent}: {e}", reason=str(e)
        ) from e

    logger.debug(f"Downloading {url} -> {staging_path}")
    written = 0
    try:
        with os.fdopen(fd, "wb") as out:
            req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
            with urllib.request.urlopen(req, timeout=timeout) as response:
                status = getattr(response, "status", 200)
                if not 200 <= status < 300:
                    raise DownloadFailed(
                        f"Bad status downloading {url}: {status}", status=status
                    )

                expected = _expected_length(response)
                while True:
                    if cancel is not None and cancel.is_set():
                        raise DownloadCancelled(f"Download of {url} cancelled")
                    chunk = response.read(chunk_size)
                    if not chunk:
                        break
                    out.write(chunk)
                    written += len(chunk)
                    if on_progress is not None:
                        on_progress(written, expected)

            if expected is not None and written != expected:
                raise DownloadFailed(
                    f"Incomplete download of {url}: got {written} of {expected} bytes",
                    reason="short read",
                )
            out.flush()
            os.fsync(out.fileno())

        os.replace(staging_path, dest_path)
    except urllib.error.HTTPError as e:
        _discard(staging_path)
        raise DownloadFailed(
            f"Bad status downloading {url}: {e.code}", status=e.code
        ) from e
    except DownloadFailed:
        _discard(staging_path)
        raise
    except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as e:
        _discard(staging_path)
        raise DownloadFailed(
            f"Download of {url} failed after {written} bytes: {e}", reason=str(e)
        ) from e

    logger.debug(f"Downloaded {written} bytes to {dest_path}")
    return written


def _discard(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove staging file {path}: {e}")
