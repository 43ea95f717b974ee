"""ID generation utilities."""

import re
from datetime import datetime
from secrets import token_hex

SAFE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
ID_MAX_LEN = 128


def new_run_id(now: datetime) -> str:
    """Create run id: YYYYMMDD_HHMMSS_<6chars>."""
    ts = now.strftime("%Y%m%d_%H%M%S")
    suffix = token_hex(3)
    return f"{ts}_{suffix}"


def is_safe_id(value: object) -> bool:
    return (
        isinstance(value, str)
        and len(value) <= ID_MAX_LEN
        and SAFE_ID_PATTERN.fullmatch(value) is not None
    )
