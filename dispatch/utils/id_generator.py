"""
Short prefixed ID generator for dispatch records.

Format: {prefix}_{base36_random}
- pr_xxxxxxxx  - prediction
- pt_xxxxxxxx  - pattern

8 chars base36 = 36^8 = 2.8 trillion unique IDs per type.
Incident ids are NOT generated here: they are monotonic integers per city.
"""
import secrets

# Base36 alphabet (lowercase letters + digits)
ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
BASE = len(ALPHABET)  # 36

PREFIXES = {
    'prediction': 'pr',
    'pattern': 'pt',
}


def _random_base36(length: int = 8) -> str:
    """Generate random base36 string"""
    result = []
    for _ in range(length):
        result.append(ALPHABET[secrets.randbelow(BASE)])
    return ''.join(result)


def generate_id(record_type: str) -> str:
    """
    Generate a new short ID for the given record type.

    Args:
        record_type: 'prediction' or 'pattern'

    Returns:
        Short ID like 'pr_x5b8r2yj'

    Raises:
        ValueError: If record_type is invalid
    """
    if record_type not in PREFIXES:
        raise ValueError(f"Invalid record type: {record_type}. "
                        f"Must be one of: {list(PREFIXES.keys())}")

    prefix = PREFIXES[record_type]
    return f"{prefix}_{_random_base36(8)}"
