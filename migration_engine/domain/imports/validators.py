"""
Preset format validators.

Target fields declare a ``format`` by preset name; validation and column
profiling both check values against these compiled patterns.
"""

import re
from typing import Dict, NamedTuple, Optional, Tuple


class FormatPreset(NamedTuple):
    pattern: "re.Pattern[str]"
    description: str
    example: Optional[str] = None


def _preset(pattern: str, description: str, example: Optional[str] = None) -> FormatPreset:
    return FormatPreset(re.compile(pattern), description, example)


FORMAT_PRESETS: Dict[str, FormatPreset] = {
    # Contact
    "email": _preset(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$", "email address", "name@example.com"),
    "phone": _preset(r"^\+?[\d\s\-\.\(\)]{7,20}$", "phone number (7-20 digits and separators)", "+1 555-123-4567"),
    "phone_us": _preset(
        r"^(\+?1[\s.-]?)?(\([0-9]{3}\)|[0-9]{3})[\s.-]?[0-9]{3}[\s.-]?[0-9]{4}$",
        "US phone number",
        "(555) 123-4567",
    ),
    "phone_international": _preset(r"^\+[1-9]\d{6,14}$", "E.164 phone number", "+15551234567"),
    # Identifiers
    "uuid": _preset(
        r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$",
        "UUID",
    ),
    "employee_id": _preset(r"^[A-Za-z0-9][A-Za-z0-9\-_]{1,31}$", "employee identifier", "E-10042"),
    "alphanumeric_id": _preset(r"^[A-Za-z0-9]+$", "alphanumeric identifier"),
    "postal_code": _preset(r"^[A-Za-z0-9\s-]{3,10}$", "postal code"),
    "postal_code_us": _preset(r"^\d{5}(-\d{4})?$", "US ZIP code", "94105"),
    "postal_code_ca": _preset(r"^[A-Za-z]\d[A-Za-z][\s-]?\d[A-Za-z]\d$", "Canadian postal code", "K1A 0B1"),
    "country_code": _preset(r"^[A-Z]{2}$", "ISO 3166 alpha-2 country code", "US"),
    # Web
    "url": _preset(r"^https?://[^\s/$.?#].[^\s]*$", "HTTP/HTTPS URL"),
    "domain": _preset(r"^(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]{2,}$", "domain name"),
    # Canonical outputs of the date rules
    "date_iso": _preset(r"^\d{4}-\d{2}-\d{2}$", "ISO 8601 date (YYYY-MM-DD)", "2024-01-15"),
    "datetime_iso": _preset(
        r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?$",
        "ISO 8601 timestamp",
        "2024-01-15T09:30:00Z",
    ),
    "time_24h": _preset(r"^([01]\d|2[0-3]):([0-5]\d)(:([0-5]\d))?$", "24-hour time (HH:MM[:SS])"),
    # Money
    "currency_usd": _preset(r"^\$?[\d,]+(\.\d{2})?$", "US dollar amount"),
}


def get_preset(preset_name: str) -> Optional[FormatPreset]:
    return FORMAT_PRESETS.get(preset_name)


def validate_format(value, preset_name: str) -> Tuple[bool, Optional[str]]:
    """
    Check a single non-empty value against a preset.

    Empty values always pass; missing values are the required check's concern.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        return True, None

    preset = get_preset(preset_name)
    if preset is None:
        return False, f"Unknown format preset: {preset_name}"

    text = str(value).strip()
    if preset.pattern.match(text):
        return True, None
    return False, f"Value '{text}' is not a valid {preset.description}"


def list_available_presets() -> Dict[str, str]:
    return {name: preset.description for name, preset in FORMAT_PRESETS.items()}
