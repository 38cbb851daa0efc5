"""
Validation helpers for user-defined status and teacher event types.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Iterable, Tuple

from scholartrack.models.enums import RESERVED_NAMES

SPECIAL_CHARACTERS = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")
HEX_COLOR = re.compile(r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$")
RGB_COLOR = re.compile(r"^rgba?\(\s*\d+\s*,\s*\d+\s*,\s*\d+\s*(,\s*[\d.]+\s*)?\)$")

NAMED_COLORS = frozenset({
    'black', 'silver', 'gray', 'white', 'maroon', 'red', 'purple', 'fuchsia',
    'green', 'lime', 'olive', 'yellow', 'navy', 'blue', 'teal', 'aqua',
    'orange', 'pink', 'brown', 'violet', 'indigo', 'coral', 'gold', 'khaki',
    'lavender', 'magenta', 'plum', 'salmon', 'tan', 'turquoise',
})


@dataclass
class ValidationResult:
    """Result of validating one value."""
    is_valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def add_error(self, message: str):
        self.is_valid = False
        self.errors.append(message)

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        return ValidationResult(
            is_valid=self.is_valid and other.is_valid,
            errors=self.errors + other.errors,
            warnings=self.warnings + other.warnings,
        )


@dataclass
class NameValidationOptions:
    min_length: int = 2
    max_length: int = 50
    allow_special_chars: bool = False
    allow_numbers: bool = True
    reserved_names: Tuple[str, ...] = RESERVED_NAMES
    case_sensitive: bool = False


def validate_custom_type_name(name: str, options: Optional[NameValidationOptions] = None,
                              existing_names: Iterable[str] = ()) -> ValidationResult:
    options = options or NameValidationOptions()
    result = ValidationResult()
    trimmed = name.strip()

    if not trimmed:
        result.add_error("Name cannot be empty")
        return result

    if len(trimmed) < options.min_length:
        result.add_error(f"Name must be at least {options.min_length} characters long")
    if len(trimmed) > options.max_length:
        result.add_error(f"Name cannot exceed {options.max_length} characters")

    if not options.allow_special_chars and SPECIAL_CHARACTERS.search(trimmed):
        result.add_error("Name cannot contain special characters")
    if not options.allow_numbers and re.search(r"\d", trimmed):
        result.add_error("Name cannot contain numbers")

    if options.case_sensitive:
        comparison = trimmed
        reserved = set(options.reserved_names)
        existing = set(existing_names)
    else:
        comparison = trimmed.upper()
        reserved = {n.upper() for n in options.reserved_names}
        existing = {n.upper() for n in existing_names}

    if comparison in reserved:
        result.add_error("Name is reserved and cannot be used")
    if comparison in existing:
        result.add_error("Name already exists")

    if trimmed != name:
        result.warnings.append("Leading and trailing spaces will be automatically removed")
    if re.search(r"\s{2,}", trimmed):
        result.warnings.append("Multiple consecutive spaces will be normalized to single spaces")
    if trimmed.lower() in ("default", "none"):
        result.warnings.append("Consider using a more descriptive name")

    return result


def validate_color(color: Optional[str]) -> ValidationResult:
    """Accept hex (#RGB / #RRGGBB), rgb()/rgba(), or a basic CSS colour name."""
    result = ValidationResult()
    if not color or not color.strip():
        result.add_error("Color cannot be empty")
        return result

    trimmed = color.strip()
    if HEX_COLOR.match(trimmed) or RGB_COLOR.match(trimmed) or trimmed.lower() in NAMED_COLORS:
        return result

    result.add_error("Invalid color format. Use hex (#RRGGBB), rgb(r,g,b), or a valid CSS color name")
    return result


def normalize_name(name: str, case_sensitive: bool = False) -> str:
    normalized = re.sub(r"\s+", " ", name.strip())
    if not case_sensitive:
        normalized = re.sub(r"\b\w", lambda m: m.group(0).upper(), normalized.lower())
    return normalized


def validate_custom_status_type(name: str, color: str, existing_names: Iterable[str] = ()) -> ValidationResult:
    return validate_custom_type_name(name, existing_names=existing_names).merge(validate_color(color))


def validate_custom_teacher_event_type(name: str, existing_names: Iterable[str] = ()) -> ValidationResult:
    return validate_custom_type_name(name, existing_names=existing_names)


def sanitize_input(value: str) -> str:
    """Strip angle brackets, ``javascript:`` and inline event handlers."""
    value = re.sub(r"[<>]", "", value)
    value = re.sub(r"javascript:", "", value, flags=re.IGNORECASE)
    value = re.sub(r"on\w+=", "", value, flags=re.IGNORECASE)
    return value.strip()


def validate_naming_convention(name: str) -> ValidationResult:
    # Style advice only; never invalid
    result = ValidationResult()
    if name != name.strip():
        result.warnings.append("Name should not have leading or trailing spaces")
    if "_" in name or "-" in name:
        result.warnings.append("Consider using spaces instead of underscores or hyphens for better readability")
    if name == name.upper() and len(name) > 3:
        result.warnings.append("Consider using title case instead of all caps for better readability")
    if name == name.lower() and len(name) > 3:
        result.warnings.append("Consider using title case for better readability")
    return result
