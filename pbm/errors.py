"""Error taxonomy surfaced to callers.

Every failure the core raises is a :class:`PbmError` subclass carrying a
stable ``kind`` (the family a client switches on), a ``code`` naming the
precise condition, and the HTTP status the edge maps it to. The module is
pure Python so the sheet-code codec and scanners can raise these without
importing Flask.

Families:
  BadRequest (400)    malformed input
  NotFound (404)      absent, or invisible to the caller
  Conflict (409)      lock contention and illegal state transitions
  Unprocessable (422) well-formed input the current state cannot accept
  Forbidden (403)     caller lacks the required subscription kind
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class PbmError(Exception):
    kind = "Internal"
    code = "Internal"
    http_status = 500

    def __init__(
        self, message: Optional[str] = None, *, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None
    ):
        self.message = message or self.code
        if code:
            self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"kind": self.kind, "code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


# --- BadRequest --------------------------------------------------------------
class BadRequest(PbmError):
    kind = "BadRequest"
    code = "BadRequest"
    http_status = 400


class EmptyBody(BadRequest):
    code = "EmptyBody"


class InvalidField(BadRequest):
    code = "InvalidField"


class MalformedCode(BadRequest):
    code = "MalformedCode"


class ChecksumMismatch(BadRequest):
    code = "ChecksumMismatch"


class ImageTooLarge(BadRequest):
    code = "ImageTooLarge"


class UnsupportedImageFormat(BadRequest):
    code = "UnsupportedImageFormat"


class UnreadableImage(BadRequest):
    code = "UnreadableImage"


class BadDimensions(BadRequest):
    code = "BadDimensions"


class UnsupportedSheetType(BadRequest):
    code = "UnsupportedSheetType"


class SheetBelongsElsewhere(BadRequest):
    code = "SheetBelongsElsewhere"


# --- NotFound ----------------------------------------------------------------
class NotFound(PbmError):
    kind = "NotFound"
    code = "NotFound"
    http_status = 404


class NoTemplate(NotFound):
    code = "NoTemplate"


# --- Forbidden ---------------------------------------------------------------
class Forbidden(PbmError):
    kind = "Forbidden"
    code = "Forbidden"
    http_status = 403


# --- Conflict ----------------------------------------------------------------
class Conflict(PbmError):
    kind = "Conflict"
    code = "Conflict"
    http_status = 409


class Busy(Conflict):
    code = "Busy"


class IllegalTransition(Conflict):
    code = "IllegalTransition"


class GameNotPublished(Conflict):
    code = "GameNotPublished"


class GameNotDraft(Conflict):
    code = "GameNotDraft"


class NotReady(Conflict):
    """Published game failed the readiness validator; ``details['issues']`` lists why."""

    code = "NotReady"


# --- Unprocessable -----------------------------------------------------------
class Unprocessable(PbmError):
    kind = "Unprocessable"
    code = "Unprocessable"
    http_status = 422


class NotProcessable(Unprocessable):
    code = "NotProcessable"


class ScanFailed(Unprocessable):
    code = "ScanFailed"


class ScanTimeout(Unprocessable):
    code = "ScanTimeout"


class RenderFailed(Unprocessable):
    code = "RenderFailed"


class RenderTimeout(Unprocessable):
    code = "RenderTimeout"


__all__ = [
    "PbmError",
    "BadRequest",
    "EmptyBody",
    "InvalidField",
    "MalformedCode",
    "ChecksumMismatch",
    "ImageTooLarge",
    "UnsupportedImageFormat",
    "UnreadableImage",
    "BadDimensions",
    "UnsupportedSheetType",
    "SheetBelongsElsewhere",
    "NotFound",
    "NoTemplate",
    "Forbidden",
    "Conflict",
    "Busy",
    "IllegalTransition",
    "GameNotPublished",
    "GameNotDraft",
    "NotReady",
    "Unprocessable",
    "NotProcessable",
    "ScanFailed",
    "ScanTimeout",
    "RenderFailed",
    "RenderTimeout",
]
