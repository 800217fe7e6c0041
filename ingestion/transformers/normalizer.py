"""
Transform raw upstream facility rows into the canonical facility schema.

Field names vary between upstream exports, so each canonical attribute is
resolved from an ordered list of candidate source fields; the first one
that is present and non-blank wins.

List-valued attributes arrive either as a JSON array or as a delimited
string. The canonical delimiter is ",". A string token that still contains
";" or "|" after splitting is kept whole and reported as a warning.
"""

import hashlib
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from core.exceptions import NormalizationError
from schemas.facility import CanonicalFacility, SourceRecord, ValidationResult
import logging

logger = logging.getLogger(__name__)


FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "source_id": ("id", "frid", "facilityId", "sourceId"),
    "name": ("facilityName", "name1", "name"),
    "street": ("street1", "address1", "street"),
    "street2": ("street2", "address2"),
    "city": ("city",),
    "state": ("state",),
    "zip": ("zip", "zip5"),
    "phone": ("phone", "phoneNumber"),
    "website": ("website", "url"),
    "latitude": ("latitude", "lat"),
    "longitude": ("longitude", "lng", "lon"),
    "services": ("services", "servicesCd", "servicesProvided", "typeServices", "categories"),
    "insurance": ("insurance", "paymentTypes", "paymentAccepted", "insuranceAccepted", "payment"),
    "amenities": ("amenities",),
    "specialties": ("specialties", "populations"),
    "facility_type": ("facilityType", "typeLabel"),
    "updated_at": ("lastUpdated", "updatedAt", "updated_at", "modifiedDate"),
}

SERVICE_FLAGS: Tuple[Tuple[str, str], ...] = (
    ("detox", "Detox"),
    ("residential", "Residential Treatment"),
    ("outpatient", "Outpatient"),
    ("telehealth", "Telehealth"),
    ("mat", "Medication-Assisted Treatment"),
)

INSURANCE_FLAGS: Tuple[Tuple[str, str], ...] = (
    ("medicaid", "Medicaid"),
    ("medicare", "Medicare"),
    ("privateInsurance", "Private Insurance"),
    ("privateIns", "Private Insurance"),
    ("selfPay", "Self Pay"),
)

US_STATES: Dict[str, str] = {
    "alabama": "AL", "alaska": "AK", "arizona": "AZ", "arkansas": "AR",
    "california": "CA", "colorado": "CO", "connecticut": "CT", "delaware": "DE",
    "florida": "FL", "georgia": "GA", "hawaii": "HI", "idaho": "ID",
    "illinois": "IL", "indiana": "IN", "iowa": "IA", "kansas": "KS",
    "kentucky": "KY", "louisiana": "LA", "maine": "ME", "maryland": "MD",
    "massachusetts": "MA", "michigan": "MI", "minnesota": "MN", "mississippi": "MS",
    "missouri": "MO", "montana": "MT", "nebraska": "NE", "nevada": "NV",
    "new hampshire": "NH", "new jersey": "NJ", "new mexico": "NM", "new york": "NY",
    "north carolina": "NC", "north dakota": "ND", "ohio": "OH", "oklahoma": "OK",
    "oregon": "OR", "pennsylvania": "PA", "rhode island": "RI", "south carolina": "SC",
    "south dakota": "SD", "tennessee": "TN", "texas": "TX", "utah": "UT",
    "vermont": "VT", "virginia": "VA", "washington": "WA", "west virginia": "WV",
    "wisconsin": "WI", "wyoming": "WY", "district of columbia": "DC",
    "puerto rico": "PR", "guam": "GU", "virgin islands": "VI",
    "american samoa": "AS", "northern mariana islands": "MP",
}
STATE_CODES = frozenset(US_STATES.values())

REQUIRED_FIELD_WEIGHTS: Tuple[Tuple[str, float], ...] = (
    ("name", 0.25),
    ("street", 0.20),
    ("city", 0.15),
    ("state", 0.15),
    ("phone", 0.10),
)
COORDINATE_BONUS = 0.15

OPTIONAL_FIELDS = ("street", "city", "zip", "phone", "website")

_TRUTHY = {"1", "true", "yes", "y"}
_AMBIGUOUS_DELIMITERS = re.compile(r"[;|]")


def normalize_key_part(value: Optional[str]) -> str:
    """Casefold, trim and collapse internal whitespace."""
    return " ".join((value or "").casefold().split())


def dedupe_key(name: Optional[str], city: Optional[str], state: Optional[str]) -> str:
    return "|".join(normalize_key_part(v) for v in (name, city, state))


def facility_id_for(name: Optional[str], city: Optional[str], state: Optional[str]) -> str:
    """Stable id derived from the dedupe key; also the store conflict key."""
    digest = hashlib.sha1(dedupe_key(name, city, state).encode("utf-8")).hexdigest()
    return f"fac_{digest[:20]}"


def compute_quality_score(facility: CanonicalFacility, is_valid: bool) -> float:
    score = 0.0
    for field, weight in REQUIRED_FIELD_WEIGHTS:
        if getattr(facility, field):
            score += weight
    if facility.has_coordinates:
        score += COORDINATE_BONUS
    if not is_valid:
        score /= 2
    return round(min(1.0, max(0.0, score)), 4)


def validate_facility(facility: CanonicalFacility) -> ValidationResult:
    """Required-field checks that gate loading regardless of strict validation."""
    errors: List[str] = []
    if not facility.name:
        errors.append("Missing required field: name")
    if not facility.state:
        errors.append("Missing required field: state")
    elif facility.state not in STATE_CODES:
        errors.append(f"Invalid state: '{facility.state}'")
    return ValidationResult(
        is_valid=not errors,
        errors=errors,
        quality_score=compute_quality_score(facility, not errors),
    )


class DataNormalizer:
    """
    Normalize upstream rows into CanonicalFacility.

    Handles:
    - Field aliasing (first present candidate wins)
    - Text, phone, zip, website and coordinate cleanup
    - List fields from arrays or delimited strings
    - Boolean flags folded into services and insurance
    - Derived classification (residential, facility type, verified, description)
    - Quality score and validation result
    """

    def __init__(self, pipeline: str = "findtreatment"):
        self.pipeline = pipeline

    def normalize(
        self,
        raw_record: Union[SourceRecord, Dict[str, Any]],
        observed_at: Optional[datetime] = None
    ) -> Tuple[CanonicalFacility, ValidationResult]:
        """
        Normalize a raw record.

        Args:
            raw_record: Upstream row as a dict or SourceRecord
            observed_at: Timestamp used when the row carries no update time

        Returns:
            (CanonicalFacility, ValidationResult). Invalid rows still yield a
            facility so callers can report on them.

        Raises:
            NormalizationError: If the row does not match the SourceRecord shape
        """
        record = self._coerce(raw_record)
        observed_at = observed_at or datetime.now(timezone.utc)
        errors: List[str] = []
        warnings: List[str] = []

        name = self._clean_text(self._first(record, "name"))
        city = self._clean_text(self._first(record, "city"))
        state = self._parse_state(self._first(record, "state"), errors)
        street = self._join_street(
            self._clean_text(self._first(record, "street")),
            self._clean_text(self._first(record, "street2")),
        )
        zip_code = self._parse_zip(self._first(record, "zip"))
        phone = self._parse_phone(self._first(record, "phone"), warnings)
        website = self._parse_website(self._first(record, "website"))
        latitude, longitude = self._parse_coordinates(record, errors, warnings)

        if not name:
            errors.insert(0, "Missing required field: name")

        services = self._parse_list(self._first(record, "services"), "services", warnings)
        for flag, label in SERVICE_FLAGS:
            if self._is_truthy(record.present(flag)):
                services.append(label)
        services = self._dedupe_sorted(services)

        insurance = self._parse_list(self._first(record, "insurance"), "insurance", warnings)
        for flag, label in INSURANCE_FLAGS:
            if self._is_truthy(record.present(flag)):
                insurance.append(label)
        insurance = self._dedupe_sorted(insurance)

        amenities = self._dedupe_sorted(
            self._parse_list(self._first(record, "amenities"), "amenities", warnings)
        )
        specialties = self._dedupe_sorted(
            self._parse_list(self._first(record, "specialties"), "specialties", warnings)
        )

        given_type = self._clean_text(self._first(record, "facility_type"))
        is_residential = self._determine_residential(record, services, given_type)
        facility_type = given_type or self._determine_facility_type(record, services, is_residential)

        for field, value in (("street", street), ("city", city), ("zip", zip_code),
                             ("phone", phone), ("website", website)):
            if not value:
                warnings.append(f"Missing optional field: {field}")
        if not services:
            warnings.append("Missing optional field: services")

        source_id = self._first(record, "source_id")
        facility = CanonicalFacility(
            id=facility_id_for(name, city, state),
            source_id=str(source_id) if source_id is not None else None,
            name=name or "",
            street=street,
            city=city,
            state=state,
            zip=zip_code,
            phone=phone,
            website=website,
            latitude=latitude,
            longitude=longitude,
            services=services,
            accepted_insurance=insurance,
            amenities=amenities,
            specialties=specialties,
            facility_type=facility_type,
            is_residential=is_residential,
            verified=self._determine_verified(record),
            description=self._clean_text(record.present("description"))
            or self._generate_description(name, city, state, facility_type, services),
            source_data=record.payload(),
            last_updated=self._parse_datetime(self._first(record, "updated_at")) or observed_at,
            created_at=observed_at,
        )

        is_valid = not errors
        quality = compute_quality_score(facility, is_valid)
        facility = facility.model_copy(update={"data_quality": quality})

        if not is_valid:
            logger.debug(f"Record {facility.source_id or facility.id} failed validation: {errors}")

        return facility, ValidationResult(
            is_valid=is_valid,
            errors=errors,
            warnings=warnings,
            quality_score=quality,
        )

    def validate(self, facility: CanonicalFacility) -> ValidationResult:
        return validate_facility(facility)

    # ------------------------------------------------------------------
    # Field resolution
    # ------------------------------------------------------------------

    @staticmethod
    def _coerce(raw_record: Union[SourceRecord, Dict[str, Any]]) -> SourceRecord:
        if isinstance(raw_record, SourceRecord):
            return raw_record
        try:
            return SourceRecord.model_validate(raw_record)
        except PydanticValidationError as e:
            source_id = raw_record.get("id") if isinstance(raw_record, dict) else None
            raise NormalizationError(
                "Source record does not match the expected shape",
                context={
                    "source_id": source_id,
                    "field_errors": {".".join(map(str, err["loc"])): err["msg"] for err in e.errors()},
                },
                original_exception=e,
            )

    @staticmethod
    def _first(record: SourceRecord, attribute: str) -> Any:
        for candidate in FIELD_ALIASES[attribute]:
            value = record.present(candidate)
            if value is not None:
                return value
        return None

    # ------------------------------------------------------------------
    # Scalar parsing
    # ------------------------------------------------------------------

    @staticmethod
    def _clean_text(value: Any) -> Optional[str]:
        if value is None:
            return None
        text = " ".join(str(value).split())
        return text or None

    @staticmethod
    def _join_street(street: Optional[str], street2: Optional[str]) -> Optional[str]:
        if street and street2:
            return f"{street}, {street2}"
        return street or street2

    def _parse_state(self, value: Any, errors: List[str]) -> str:
        text = self._clean_text(value)
        if text is None:
            errors.append("Missing required field: state")
            return ""
        if text.upper() in STATE_CODES:
            return text.upper()
        code = US_STATES.get(text.casefold())
        if code:
            return code
        errors.append(f"Invalid state: '{text}'")
        return ""

    @staticmethod
    def _parse_zip(value: Any) -> Optional[str]:
        if value is None:
            return None
        cleaned = re.sub(r"[^\d-]", "", str(value))[:10]
        return cleaned or None

    def _parse_phone(self, value: Any, warnings: List[str]) -> Optional[str]:
        text = self._clean_text(value)
        if text is None:
            return None
        digits = re.sub(r"\D", "", text)
        if len(digits) == 11 and digits.startswith("1"):
            digits = digits[1:]
        if len(digits) == 10:
            return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
        warnings.append(f"Invalid phone format: '{text}'")
        return text

    def _parse_website(self, value: Any) -> Optional[str]:
        text = self._clean_text(value)
        if text is None:
            return None
        if not re.match(r"^https?://", text, re.IGNORECASE):
            text = f"https://{text}"
        return text

    def _parse_coordinates(
        self,
        record: SourceRecord,
        errors: List[str],
        warnings: List[str]
    ) -> Tuple[Optional[float], Optional[float]]:
        latitude = self._parse_float(self._first(record, "latitude"))
        longitude = self._parse_float(self._first(record, "longitude"))
        if latitude is None or longitude is None:
            warnings.append("Missing optional field: coordinates")
            return None, None
        if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
            errors.append(f"Invalid coordinates: ({latitude}, {longitude})")
            return None, None
        return latitude, longitude

    @staticmethod
    def _parse_float(value: Any) -> Optional[float]:
        """Safely parse float value"""
        if value is None or isinstance(value, bool):
            return None
        try:
            parsed = float(value)
        except (ValueError, TypeError):
            return None
        if parsed != parsed or parsed in (float("inf"), float("-inf")):
            return None
        return parsed

    @staticmethod
    def _parse_datetime(value: Any) -> Optional[datetime]:
        """Parse ISO timestamps; naive values are taken as UTC"""
        if not value:
            return None
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    @staticmethod
    def _is_truthy(value: Any) -> bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return value == 1
        if isinstance(value, str):
            return value.strip().lower() in _TRUTHY
        return False

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------

    def _parse_list(self, value: Any, field: str, warnings: List[str]) -> List[str]:
        if value is None:
            return []
        if isinstance(value, list):
            items = [self._clean_text(item) for item in value if not isinstance(item, (dict, list))]
            return [item for item in items if item]

        tokens = [self._clean_text(token) for token in str(value).split(",")]
        tokens = [token for token in tokens if token]
        for token in tokens:
            if _AMBIGUOUS_DELIMITERS.search(token):
                warnings.append(f"Ambiguous delimiter in {field}: '{token}'")
        return tokens

    @staticmethod
    def _dedupe_sorted(values: List[str]) -> List[str]:
        seen: Dict[str, str] = {}
        for value in values:
            seen.setdefault(value.casefold(), value)
        return sorted(seen.values(), key=str.casefold)

    # ------------------------------------------------------------------
    # Derived classification
    # ------------------------------------------------------------------

    def _determine_residential(
        self,
        record: SourceRecord,
        services: List[str],
        facility_type: Optional[str]
    ) -> bool:
        if self._is_truthy(record.present("isResidential")) or self._is_truthy(record.present("residential")):
            return True
        if any("residential" in service.casefold() for service in services):
            return True
        return bool(facility_type and "residential" in facility_type.casefold())

    def _determine_facility_type(
        self,
        record: SourceRecord,
        services: List[str],
        is_residential: bool
    ) -> str:
        lowered = [service.casefold() for service in services]
        if is_residential:
            return "Residential Treatment Center"
        if self._is_truthy(record.present("hospital")) or any("hospital" in s for s in lowered):
            return "Hospital"
        if self._is_truthy(record.present("outpatient")) or any("outpatient" in s for s in lowered):
            return "Outpatient Center"
        return "Treatment Facility"

    def _determine_verified(self, record: SourceRecord) -> bool:
        if self._is_truthy(record.present("verified")) or self._is_truthy(record.present("isVerified")):
            return True
        return bool(record.present("certificationDate") or record.present("licenseNumber"))

    @staticmethod
    def _generate_description(
        name: Optional[str],
        city: Optional[str],
        state: str,
        facility_type: str,
        services: List[str]
    ) -> Optional[str]:
        if not name:
            return None
        location = ", ".join(part for part in (city, state) if part)
        description = f"{name} is a {facility_type.lower()}"
        if location:
            description += f" in {location}"
        if services:
            description += f" offering {', '.join(services[:3])}"
        return description + "."
