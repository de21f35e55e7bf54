from __future__ import annotations

import enum
import hashlib
from dataclasses import dataclass, fields
from typing import Any, Mapping

FINGERPRINT_DELIMITER = "|"


class FingerprintMatch(str, enum.Enum):
    EXACT_MATCH = "EXACT_MATCH"
    NO_FINGERPRINT = "NO_FINGERPRINT"
    MISMATCH = "MISMATCH"


@dataclass(frozen=True, slots=True)
class FingerprintTraits:
    """Weak browser/OS traits reported by the scanning page.

    Field order is part of the hash format.
    """

    timezone: str = ""
    screen_width: str = ""
    screen_height: str = ""
    pixel_ratio: str = ""
    language: str = ""
    platform: str = ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> FingerprintTraits:
        return cls(
            timezone=_clean(payload.get("fp_tz")),
            screen_width=_clean(payload.get("fp_sw")),
            screen_height=_clean(payload.get("fp_sh")),
            pixel_ratio=_clean(payload.get("fp_dpr")),
            language=_clean(payload.get("fp_lang")),
            platform=_clean(payload.get("fp_platform")),
        )

    def values(self) -> list[str]:
        return [_clean(getattr(self, item.name)) for item in fields(self)]

    def is_empty(self) -> bool:
        return not any(self.values())


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def build_fingerprint_string(traits: FingerprintTraits) -> str:
    return FINGERPRINT_DELIMITER.join(traits.values())


def fingerprint_hash(traits: FingerprintTraits) -> str | None:
    if traits.is_empty():
        return None
    canonical = build_fingerprint_string(traits)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def compare_fingerprints(current_hash: str | None, stored_hash: str | None) -> FingerprintMatch:
    if not current_hash or not stored_hash:
        return FingerprintMatch.NO_FINGERPRINT
    if current_hash == stored_hash:
        return FingerprintMatch.EXACT_MATCH
    return FingerprintMatch.MISMATCH
