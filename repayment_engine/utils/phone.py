"""Phone number utilities"""

import re
from typing import List

_STRIP = re.compile(r"[\s\-\(\)\+\.]")


def normalize_phone(phone: str | None, country_code: str = "254") -> List[str]:
    """
    Return every equivalent representation of a mobile number.

    254711000000 / 0711000000 / +254711000000 all map to the same three
    variants. Numbers in any other shape are returned cleaned but untouched.
    """
    if not phone:
        return []

    clean = _STRIP.sub("", str(phone))
    if not clean:
        return []

    local_length = 10
    international_length = len(country_code) + local_length - 1

    if clean.startswith(country_code) and len(clean) == international_length:
        subscriber = clean[len(country_code):]
    elif clean.startswith("0") and len(clean) == local_length:
        subscriber = clean[1:]
    else:
        return [clean]

    return [
        "0" + subscriber,
        country_code + subscriber,
        "+" + country_code + subscriber,
    ]
