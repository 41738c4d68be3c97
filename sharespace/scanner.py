"""Client for the external virus scanning API."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from . import config

logger = logging.getLogger("sharespace.scanner")


class ScannerUnavailableError(RuntimeError):
    """Raised when the scanner cannot produce a verdict."""


@dataclass
class ScanResult:
    is_clean: bool
    status: str
    signature: Optional[str] = None
    message: str = ""


def _first_signature(value: Any) -> Optional[str]:
    if isinstance(value, (list, tuple)):
        return str(value[0]) if value else None
    if value:
        return str(value)
    return None


def parse_scan_response(payload: Dict[str, Any]) -> ScanResult:
    """Normalise the verdict shapes returned by the supported scanner APIs."""

    if not isinstance(payload, dict):
        raise ScannerUnavailableError("Scanner returned an unexpected payload")

    # clamav-rest-api style: {"data": {"result": [{"is_infected": ..., "viruses": [...]}]}}
    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get("result"), list) and data["result"]:
        entry = data["result"][0]
        infected = bool(entry.get("is_infected"))
        signature = _first_signature(entry.get("viruses"))
        return ScanResult(
            is_clean=not infected,
            status="infected" if infected else "clean",
            signature=signature,
            message=str(payload.get("message") or ("Threat detected" if infected else "No threats found")),
        )

    if "isClean" in payload or "clean" in payload:
        clean = bool(payload.get("isClean", payload.get("clean")))
    elif "infected" in payload or "is_infected" in payload:
        clean = not bool(payload.get("infected", payload.get("is_infected")))
    else:
        raise ScannerUnavailableError("Scanner response did not include a verdict")

    signature = _first_signature(payload.get("signature") or payload.get("viruses"))
    return ScanResult(
        is_clean=clean,
        status="clean" if clean else "infected",
        signature=signature,
        message=str(payload.get("message") or ("No threats found" if clean else "Threat detected")),
    )


class VirusScanner:
    def __init__(
        self,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: int = 30,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.endpoint = endpoint or ""
        self.api_key = api_key or ""
        self.timeout = timeout
        self._session = session or requests.Session()

    @classmethod
    def from_env(cls) -> "VirusScanner":
        return cls(config.VIRUS_SCAN_URL, config.VIRUS_SCAN_API_KEY, config.VIRUS_SCAN_TIMEOUT)

    @property
    def enabled(self) -> bool:
        return bool(self.endpoint)

    def scan_buffer(self, data: bytes, filename: str = "upload.bin") -> ScanResult:
        if not self.enabled:
            return ScanResult(is_clean=True, status="skipped", message="Scanner not configured")

        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = self._session.post(
                self.endpoint,
                files={"file": (filename, data, "application/octet-stream")},
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as error:
            logger.error("virus_scan_failed filename=%s error=%s", filename, error)
            raise ScannerUnavailableError("Virus scanner unavailable") from error

        result = parse_scan_response(payload)
        if not result.is_clean:
            logger.warning(
                "virus_scan_detected filename=%s signature=%s", filename, result.signature
            )
        return result
