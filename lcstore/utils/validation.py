"""
Input Validation - boundary checks for values entering the store.

Provides validation for inputs handed over by the network and VM layers:
- Exact unsigned 64-bit quantities (ids, nonces, block numbers)
- Opaque binary payloads
- Parallel arrays of a sync batch
- Note tags
"""

from typing import Any, Dict, Optional, Sequence, Tuple

# =============================================================================
# Constants
# =============================================================================

MAX_U64 = 2**64 - 1
MAX_U32 = 2**32 - 1
MAX_NOTE_TAG = MAX_U32


# =============================================================================
# Validation Functions
# =============================================================================


def validate_bytes(
    data: Any,
    name: str,
    expected_length: Optional[int] = None,
    max_length: Optional[int] = None,
) -> Tuple[bool, str]:
    """
    Validate bytes input.

    Args:
        data: Data to validate
        name: Field name for error messages
        expected_length: Exact expected length
        max_length: Maximum allowed length

    Returns:
        (is_valid, error_message)
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        return False, f"{name} must be bytes, got {type(data).__name__}"

    if expected_length is not None and len(data) != expected_length:
        return False, f"{name} must be {expected_length} bytes, got {len(data)}"

    if max_length is not None and len(data) > max_length:
        return False, f"{name} exceeds max length {max_length}, got {len(data)}"

    return True, ""


def validate_integer(
    value: Any,
    name: str,
    min_val: int = 0,
    max_val: int = MAX_U64,
) -> Tuple[bool, str]:
    """
    Validate integer within bounds.

    Booleans are rejected even though they subclass int.

    Returns:
        (is_valid, error_message)
    """
    if isinstance(value, bool) or not isinstance(value, int):
        return False, f"{name} must be int, got {type(value).__name__}"

    if value < min_val:
        return False, f"{name} must be >= {min_val}, got {value}"

    if value > max_val:
        return False, f"{name} must be <= {max_val}, got {value}"

    return True, ""


def validate_u64(value: Any, name: str = "value") -> Tuple[bool, str]:
    """Validate an unsigned 64-bit integer, given as int or decimal string."""
    if isinstance(value, str):
        text = value.strip()
        if not text.isascii() or not text.isdecimal():
            return False, f"{name} must be a decimal integer string, got {value!r}"
        value = int(text)
    return validate_integer(value, name, 0, MAX_U64)


def validate_note_tag(tag: Any) -> Tuple[bool, str]:
    """Validate a note tag (u32)."""
    return validate_integer(tag, "note_tag", 0, MAX_NOTE_TAG)


def validate_parallel_arrays(arrays: Dict[str, Sequence[Any]]) -> Tuple[bool, str]:
    """
    Validate that every named array has the same length.

    Args:
        arrays: Mapping of field name to array

    Returns:
        (is_valid, error_message)
    """
    lengths = {name: len(values) for name, values in arrays.items()}
    if len(set(lengths.values())) > 1:
        detail = ", ".join(f"{name}={length}" for name, length in lengths.items())
        return False, f"Arrays must be of the same length ({detail})"
    return True, ""


# =============================================================================
# Parsing
# =============================================================================


def parse_u64(value: Any, name: str = "value") -> int:
    """
    Parse an exact u64 from an int or a decimal string.

    Raises:
        ValueError: if the value is not a u64
    """
    valid, err = validate_u64(value, name)
    if not valid:
        raise ValueError(err)
    return int(value)


def parse_optional_u64(value: Any, name: str = "value") -> Optional[int]:
    """Like parse_u64 but passes None through."""
    if value is None:
        return None
    return parse_u64(value, name)


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "validate_bytes",
    "validate_integer",
    "validate_u64",
    "validate_note_tag",
    "validate_parallel_arrays",
    "parse_u64",
    "parse_optional_u64",
    "MAX_U64",
    "MAX_U32",
    "MAX_NOTE_TAG",
]
