"""Clients for the external vision/OCR service that reads scanned sheets.

``HttpVisionClient`` posts the image (base64) with instructions and an
answer schema and expects ``{"code": str|null, "answers": {...},
"quality": float}`` back.

``FakeVisionClient`` needs no network: it reads a JSON manifest appended to
the image bytes after the ``PBMSCAN`` marker. Local development and the
test-suite use it to drive scanners deterministically.
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import httpx

from pbm.errors import ScanFailed, ScanTimeout
from pbm.logging_utils import get_logger
from pbm.utils.deadline import CallContext

log = get_logger("pbm.vision")

FAKE_MANIFEST_MARKER = b"PBMSCAN"


@dataclass(frozen=True)
class VisionResult:
    code: Optional[str]
    answers: Dict[str, Any] = field(default_factory=dict)
    quality: float = 0.0


class VisionClient(Protocol):
    def extract(
        self, ctx: CallContext, image: bytes, instructions: str, answer_schema: Dict[str, Any]
    ) -> VisionResult:
        ...


class HttpVisionClient:
    """Minimal HTTP client for the vision extraction endpoint."""

    def __init__(self, url: str, api_key: str = "", timeout: float = 30.0) -> None:
        self._url = url
        self._timeout = timeout
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(timeout=self._timeout, headers=headers)

    def extract(
        self, ctx: CallContext, image: bytes, instructions: str, answer_schema: Dict[str, Any]
    ) -> VisionResult:
        if ctx.expired():
            raise ScanTimeout("scan deadline elapsed before contacting the vision service")
        body = {
            "image": base64.b64encode(image).decode("ascii"),
            "instructions": instructions,
            "answer_schema": answer_schema,
            "correlation_id": ctx.correlation_id,
        }
        try:
            resp = self._client.post(self._url, json=body, timeout=min(self._timeout, ctx.remaining()))
            resp.raise_for_status()
            data = resp.json()
        except httpx.TimeoutException as exc:
            log.warn(event="vision_timeout", url=self._url, correlation_id=ctx.correlation_id)
            raise ScanTimeout("vision service did not answer before the deadline") from exc
        except httpx.HTTPError as exc:
            log.warn(event="vision_http_error", url=self._url, error=str(exc))
            raise ScanFailed(f"vision service error: {exc}") from exc
        except ValueError as exc:
            raise ScanFailed("vision service returned invalid JSON") from exc
        return _result_from_payload(data)

    def close(self):
        self._client.close()


class FakeVisionClient:
    """Reads the answers a test (or a developer) embedded in the image bytes."""

    def extract(
        self, ctx: CallContext, image: bytes, instructions: str, answer_schema: Dict[str, Any]
    ) -> VisionResult:
        if ctx.expired():
            raise ScanTimeout("scan deadline elapsed")
        pos = image.rfind(FAKE_MANIFEST_MARKER)
        if pos < 0:
            raise ScanFailed("no readable content on the image")
        try:
            data = json.loads(image[pos + len(FAKE_MANIFEST_MARKER) :].decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise ScanFailed("unreadable scan manifest") from exc
        if data.get("fail"):
            raise ScanFailed(str(data["fail"]))
        return _result_from_payload(data)


def embed_manifest(
    image: bytes,
    code: Optional[str] = None,
    answers: Optional[Dict[str, Any]] = None,
    quality: float = 0.95,
    **extra,
) -> bytes:
    """Return ``image`` with a fake-scanner manifest appended."""
    manifest = {"code": code, "answers": answers or {}, "quality": quality}
    manifest.update(extra)
    return image + FAKE_MANIFEST_MARKER + json.dumps(manifest).encode("utf-8")


def _result_from_payload(data: Any) -> VisionResult:
    if not isinstance(data, dict):
        raise ScanFailed("vision response is not an object")
    answers = data.get("answers") or {}
    if not isinstance(answers, dict):
        raise ScanFailed("vision answers are not an object")
    try:
        quality = float(data.get("quality", 0.0))
    except (TypeError, ValueError) as exc:
        raise ScanFailed("vision quality is not a number") from exc
    return VisionResult(code=data.get("code"), answers=answers, quality=max(0.0, min(1.0, quality)))
