"""Asset storage: fetch references to local files and publish results."""

import json
import logging
import os
import shutil
from urllib.parse import urlparse

import requests

from narration_mixer.constants import DOWNLOAD_TIMEOUT_SEC, GCS_PUBLIC_HOST
from narration_mixer.errors import DOWNLOAD_FAILED, INVALID_REF, UPLOAD_FAILED, MixError

logger = logging.getLogger(__name__)


def is_remote(ref: str) -> bool:
    return ref.startswith(("http://", "https://", "gs://"))


def to_https_url(ref: str) -> str:
    """gs://bucket/path -> https://storage.googleapis.com/bucket/path."""
    if ref.startswith("gs://"):
        return GCS_PUBLIC_HOST + ref[len("gs://"):]
    return ref


def _local_path(ref: str) -> str:
    if ref.startswith("file://"):
        return urlparse(ref).path
    return ref


class AssetStore:
    """Downloads and uploads assets by reference.

    Supported references: local paths and file:// URLs (copied), http(s)://
    and public gs:// objects (fetched over HTTP). Uploads go to a local
    directory/file:// path or are PUT to an http(s):// URL such as a signed
    storage URL.
    """

    def __init__(self, session: requests.Session | None = None, timeout: float = DOWNLOAD_TIMEOUT_SEC):
        self.session = session or requests.Session()
        self.timeout = timeout

    def download(self, ref: str, local_path: str) -> str:
        """Fetch ref into local_path. Returns local_path."""
        if not ref:
            raise MixError.critical(INVALID_REF, "Empty asset reference")

        os.makedirs(os.path.dirname(local_path) or ".", exist_ok=True)

        if not is_remote(ref):
            source = _local_path(ref)
            if not os.path.isfile(source):
                raise MixError.retryable(
                    DOWNLOAD_FAILED, f"Asset not found: {source}", ref=ref
                )
            shutil.copyfile(source, local_path)
            return local_path

        url = to_https_url(ref)
        logger.info("Downloading %s -> %s", ref, local_path)
        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                size = 0
                with open(local_path, "wb") as f:
                    for chunk in response.iter_content(chunk_size=64 * 1024):
                        f.write(chunk)
                        size += len(chunk)
        except requests.RequestException as e:
            raise MixError.retryable(
                DOWNLOAD_FAILED, f"Failed to download {ref}: {e}", ref=ref
            ) from e

        logger.info("Download complete: %s (%d bytes)", ref, size)
        return local_path

    def upload(self, local_path: str, dest_ref: str) -> str:
        """Publish local_path to dest_ref. Returns the published reference."""
        if dest_ref.startswith("gs://"):
            raise MixError.critical(
                INVALID_REF,
                "gs:// destinations need a signed https:// upload URL",
                ref=dest_ref,
            )

        if dest_ref.startswith(("http://", "https://")):
            logger.info("Uploading %s -> %s", local_path, dest_ref)
            try:
                with open(local_path, "rb") as f:
                    response = self.session.put(dest_ref, data=f, timeout=self.timeout)
                response.raise_for_status()
            except (requests.RequestException, OSError) as e:
                raise MixError.retryable(
                    UPLOAD_FAILED, f"Failed to upload to {dest_ref}: {e}",
                    ref=dest_ref, local_path=local_path,
                ) from e
            return dest_ref.split("?", 1)[0]

        target = _local_path(dest_ref)
        if dest_ref.endswith("/") or os.path.isdir(target):
            target = os.path.join(target, os.path.basename(local_path))
        try:
            os.makedirs(os.path.dirname(target) or ".", exist_ok=True)
            shutil.copyfile(local_path, target)
        except OSError as e:
            raise MixError.retryable(
                UPLOAD_FAILED, f"Failed to publish to {target}: {e}",
                ref=dest_ref, local_path=local_path,
            ) from e
        logger.info("Published %s", target)
        return os.path.abspath(target)


def fetch_json(ref: str, session: requests.Session | None = None, timeout: float = DOWNLOAD_TIMEOUT_SEC):
    """Read a JSON document from a local path or an http(s)/gs:// reference."""
    if not is_remote(ref):
        with open(_local_path(ref)) as f:
            return json.load(f)
    response = (session or requests).get(to_https_url(ref), timeout=timeout)
    response.raise_for_status()
    return response.json()
