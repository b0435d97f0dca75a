from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Protocol

from pbm.errors import ScanFailed
from pbm.scanners.vision import VisionClient
from pbm.utils.deadline import CallContext

CODE_INSTRUCTIONS = (
    "Read the identifier printed in the sheet footer. It starts with 'L-' or 'J-' "
    "and consists of three dash separated groups. Return it verbatim as 'code'."
)


@dataclass(frozen=True)
class ScanResult:
    """Structured answers read from one sheet image plus the reader's confidence in [0, 1]."""

    answers: Dict[str, Any]
    quality: float


class SheetScanner(Protocol):
    """
    SheetScanner maps a scanned image plus its authored inputs to answers.
    Both operations may block on the vision service and honour ``ctx``.
    """

    sheet_type: str

    def extract_code(self, ctx: CallContext, image: bytes) -> str:
        ...

    def scan(self, ctx: CallContext, image: bytes, template: Dict[str, Any]) -> ScanResult:
        ...


class VisionScanner:
    """Shared plumbing: call the vision client, gate on quality, then validate."""

    sheet_type = ""

    def __init__(self, client: VisionClient, min_quality: float = 0.3) -> None:
        self._client = client
        self.min_quality = min_quality

    def extract_code(self, ctx: CallContext, image: bytes) -> str:
        result = self._client.extract(ctx, image, CODE_INSTRUCTIONS, {"code": "string"})
        if not result.code or not str(result.code).strip():
            raise ScanFailed("no sheet code found on the image")
        return str(result.code).strip()

    def scan(self, ctx: CallContext, image: bytes, template: Dict[str, Any]) -> ScanResult:
        result = self._client.extract(ctx, image, self.instructions(template), self.answer_schema(template))
        if result.quality < self.min_quality:
            raise ScanFailed(
                "scan quality too low to trust the answers",
                details={"quality": result.quality, "min_quality": self.min_quality},
            )
        return ScanResult(answers=self.validate(result.answers, template), quality=result.quality)

    # Subclasses describe what to read and how to check it
    def instructions(self, template: Dict[str, Any]) -> str:
        raise NotImplementedError

    def answer_schema(self, template: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def validate(self, answers: Dict[str, Any], template: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError
