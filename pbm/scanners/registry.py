from __future__ import annotations

from typing import Dict, Iterable

from pbm.errors import UnsupportedSheetType
from pbm.models.turn_sheet import SheetType
from pbm.scanners.base import SheetScanner
from pbm.scanners.inventory_management import InventoryManagementScanner
from pbm.scanners.join_game import JoinGameScanner
from pbm.scanners.location_choice import LocationChoiceScanner
from pbm.scanners.vision import FakeVisionClient, HttpVisionClient

SCANNER_CLASSES = (LocationChoiceScanner, JoinGameScanner, InventoryManagementScanner)


class ScannerRegistry:
    """
    Exactly one scanner per SheetType.
    The default scanner is the one used to read codes before the sheet type is known.
    """

    def __init__(self, scanners: Iterable[SheetScanner], default_type: str = SheetType.LOCATION_CHOICE.value) -> None:
        self._scanners: Dict[str, SheetScanner] = {}
        for scanner in scanners:
            self.register(scanner)
        self._default_type = default_type

    def register(self, scanner: SheetScanner) -> None:
        if scanner.sheet_type not in {t.value for t in SheetType}:
            raise UnsupportedSheetType(f"unknown sheet type {scanner.sheet_type!r}")
        self._scanners[scanner.sheet_type] = scanner

    def get(self, sheet_type: str) -> SheetScanner:
        scanner = self._scanners.get(sheet_type)
        if scanner is None:
            raise UnsupportedSheetType(f"no scanner registered for sheet type {sheet_type!r}")
        return scanner

    def default(self) -> SheetScanner:
        return self.get(self._default_type)

    def supported_types(self) -> list[str]:
        return sorted(self._scanners)


def build_registry(config) -> ScannerRegistry:
    """Registry entry point: pick the vision backend from config and register every scanner."""
    backend = (config.get("PBM_SCANNER_BACKEND") or "vision").lower()
    if backend == "fake":
        client = FakeVisionClient()
    elif backend == "vision":
        client = HttpVisionClient(
            config["PBM_VISION_URL"],
            api_key=config.get("PBM_VISION_API_KEY", ""),
            timeout=config.get("PBM_SCAN_TIMEOUT_SECONDS", 30.0),
        )
    else:
        raise ValueError(f"unknown PBM_SCANNER_BACKEND {backend!r}")
    min_quality = config.get("PBM_MIN_SCAN_QUALITY", 0.3)
    return ScannerRegistry(cls(client, min_quality=min_quality) for cls in SCANNER_CLASSES)
