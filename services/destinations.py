"""
Destination Service: delivers a finished export file and, when asked,
undoes a delivery (compensation after a failed post-processing step).

Supported types: Local (copy into a directory tree) and Http (multipart
upload via requests). Other types are reported as unsupported.
"""
import logging
import os
import shutil
import time
from typing import Any, Dict, Optional, Tuple

import requests

from dataexport.collaborators import DeliveryResult

logger = logging.getLogger(__name__)

HTTP_TIMEOUT_SECONDS = 60


def _local_target(local_path: str, config: Dict[str, Any]) -> str:
    target = config.get("path") or config.get("directory") or "exports"
    root = config.get("root")
    if root and not os.path.isabs(target):
        target = os.path.join(root, target)
    # A path without an extension (or an existing directory) is a folder
    if os.path.isdir(target) or not os.path.splitext(target)[1]:
        target = os.path.join(target, os.path.basename(local_path))
    return os.path.abspath(target)


class DestinationService:
    def __init__(self, retry_delay: float = 1.0):
        self.retry_delay = retry_delay

    def save_to_destination(self, local_path: str, destination_type: str, config: Dict[str, Any],
                            max_retries: int = 3) -> DeliveryResult:
        """Deliver with up to `max_retries` extra attempts and linear backoff."""
        kind = (destination_type or "Local").lower()
        if kind == "local":
            handler = self._save_local
        elif kind == "http":
            handler = self._save_http
        else:
            return DeliveryResult(False, None, f"Unsupported destination type '{destination_type}'")

        last_error = None
        for attempt in range(max_retries + 1):
            try:
                return handler(local_path, config or {})
            except (OSError, requests.RequestException) as e:
                last_error = str(e)
                logger.warning(f"[DESTINATION] Attempt {attempt + 1} to {destination_type} failed: {e}")
            if attempt < max_retries:
                time.sleep(self.retry_delay * (attempt + 1))
        return DeliveryResult(False, None, last_error)

    @staticmethod
    def _save_local(local_path: str, config: Dict[str, Any]) -> DeliveryResult:
        target = _local_target(local_path, config)
        os.makedirs(os.path.dirname(target), exist_ok=True)
        shutil.copyfile(local_path, target)
        logger.info("[DESTINATION] Copied %s -> %s", local_path, target)
        return DeliveryResult(True, target)

    @staticmethod
    def _save_http(local_path: str, config: Dict[str, Any]) -> DeliveryResult:
        url = config.get("url")
        if not url:
            return DeliveryResult(False, None, "Http destination requires a 'url'")
        method = (config.get("method") or "POST").upper()
        headers = config.get("headers") or {}
        with open(local_path, "rb") as f:
            resp = requests.request(
                method, url,
                files={"file": (os.path.basename(local_path), f)},
                headers=headers,
                timeout=config.get("timeout", HTTP_TIMEOUT_SECONDS),
            )
        resp.raise_for_status()
        logger.info("[DESTINATION] Uploaded %s to %s (%s)", local_path, url, resp.status_code)
        return DeliveryResult(True, url, None, resp.text)

    def compensate_export(self, location: str, destination_type: str,
                          config: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
        """Remove a delivered file. Returns (success, error)."""
        kind = (destination_type or "Local").lower()
        config = config or {}
        try:
            if kind == "local":
                if location and os.path.exists(location):
                    os.remove(location)
                    logger.info("[DESTINATION] Compensation removed %s", location)
                return True, None
            if kind == "http":
                url = config.get("compensationUrl")
                if not url:
                    return False, "Http destination has no compensationUrl"
                resp = requests.delete(url, params={"location": location},
                                       headers=config.get("headers") or {}, timeout=HTTP_TIMEOUT_SECONDS)
                resp.raise_for_status()
                return True, None
        except (OSError, requests.RequestException) as e:
            logger.error(f"[DESTINATION] Compensation for {location} failed: {e}")
            return False, str(e)
        return False, f"Compensation not supported for destination type '{destination_type}'"
