"""
Strict facility validation applied before load when ETL_ENABLE_VALIDATION is on.
"""

import re
from typing import List, Tuple
from urllib.parse import urlparse

from ingestion.transformers.normalizer import compute_quality_score, validate_facility
from schemas.facility import CanonicalFacility, ValidationResult

SUSPICIOUS_PATTERNS = (
    re.compile(r"\blorem ipsum\b", re.IGNORECASE),
    re.compile(r"\btest facility\b", re.IGNORECASE),
    re.compile(r"\bdemo\b", re.IGNORECASE),
    re.compile(r"\bexample\b", re.IGNORECASE),
    re.compile(r"\bxxx\b", re.IGNORECASE),
    re.compile(r"^n/?a$", re.IGNORECASE),
)

PHONE_PATTERN = re.compile(r"^\(\d{3}\) \d{3}-\d{4}$")

# (lat_min, lat_max, lng_min, lng_max)
US_BOUNDS: Tuple[Tuple[float, float, float, float], ...] = (
    (24.0, 50.0, -125.0, -66.0),     # contiguous states
    (51.0, 72.0, -180.0, -129.0),    # Alaska
    (18.0, 23.0, -161.0, -154.0),    # Hawaii
    (17.0, 19.0, -68.0, -64.0),      # Puerto Rico, Virgin Islands
    (13.0, 21.0, 144.0, 146.0),      # Guam, Northern Mariana Islands
    (-15.0, -14.0, -171.0, -168.0),  # American Samoa
)


class FacilityValidator:
    """
    Required-field checks plus, when strict, content and plausibility checks.

    Strict errors:   placeholder or test content in the name
    Strict warnings: coordinates outside US bounds, phone not in
                     (XXX) XXX-XXXX form, website not a valid http(s) URL
    """

    def __init__(self, strict: bool = True):
        self.strict = strict

    def validate(self, facility: CanonicalFacility) -> ValidationResult:
        base = validate_facility(facility)
        if not self.strict:
            return base

        errors: List[str] = list(base.errors)
        warnings: List[str] = list(base.warnings)

        if facility.name and any(p.search(facility.name) for p in SUSPICIOUS_PATTERNS):
            errors.append(f"Suspicious content in name: '{facility.name}'")

        if facility.has_coordinates and not self._within_us(facility.latitude, facility.longitude):
            warnings.append("Coordinates outside US bounds")

        if facility.phone and not PHONE_PATTERN.match(facility.phone):
            warnings.append(f"Invalid phone format: '{facility.phone}'")

        if facility.website and not self._valid_url(facility.website):
            warnings.append(f"Invalid website URL: '{facility.website}'")

        is_valid = not errors
        return ValidationResult(
            is_valid=is_valid,
            errors=errors,
            warnings=warnings,
            quality_score=compute_quality_score(facility, is_valid),
        )

    @staticmethod
    def _within_us(latitude: float, longitude: float) -> bool:
        return any(
            lat_min <= latitude <= lat_max and lng_min <= longitude <= lng_max
            for lat_min, lat_max, lng_min, lng_max in US_BOUNDS
        )

    @staticmethod
    def _valid_url(url: str) -> bool:
        parsed = urlparse(url)
        return parsed.scheme in ("http", "https") and "." in parsed.netloc
