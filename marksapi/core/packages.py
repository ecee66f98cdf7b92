"""마크 구매 패키지 카탈로그"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional


@dataclass(frozen=True)
class MarkPackage:
    package_id: str
    name: str
    marks: int
    price_wld: Decimal


MARK_PACKAGES: Dict[str, MarkPackage] = {
    "marks_tiny": MarkPackage("marks_tiny", "Tiny Pack", 10, Decimal("0.1")),
    "marks_small": MarkPackage("marks_small", "Small Pack", 50, Decimal("0.5")),
    "marks_medium": MarkPackage("marks_medium", "Medium Pack", 100, Decimal("0.95")),
    "marks_large": MarkPackage("marks_large", "Large Pack", 500, Decimal("4.5")),
    "marks_xlarge": MarkPackage("marks_xlarge", "XLarge Pack", 1000, Decimal("8.0")),
}


def get_package(package_id: str) -> Optional[MarkPackage]:
    return MARK_PACKAGES.get(package_id)
