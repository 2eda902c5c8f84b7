"""
Phone Candidates - every format a CRM may have stored a number under

WhatsApp delivers `from` as bare digits with country code (and, for
Mexican mobiles, the legacy "1" after 52). Agents and import tools save
the same number as +52..., 10 local digits, 0052... and so on.
"""

import re
from typing import List, Optional

_NON_DIGITS = re.compile(r"\D+")

LOCAL_NUMBER_LENGTH = 10


def phone_candidates(
    raw: Optional[str],
    country_code: str = "52",
    trunk_prefix: str = "1",
) -> List[str]:
    """
    Expand a raw phone string into lookup candidates.

    Order is stable and most-specific first; duplicates are dropped.

    Args:
        raw: Phone as received (digits, optional "+", any separators)
        country_code: Country calling code without "+"
        trunk_prefix: Digit(s) carriers insert after the country code

    Returns:
        Ordered list of distinct candidate strings ([] if no digits)
    """
    if not raw:
        return []

    digits = _NON_DIGITS.sub("", str(raw))
    if not digits:
        return []

    candidates = [digits, f"+{digits}"]

    trunked = f"{country_code}{trunk_prefix}"
    if country_code and trunk_prefix and digits.startswith(trunked):
        stripped = country_code + digits[len(trunked):]
        candidates += [stripped, f"+{stripped}"]

    if len(digits) >= LOCAL_NUMBER_LENGTH:
        local = digits[-LOCAL_NUMBER_LENGTH:]
        candidates.append(local)
        if country_code:
            candidates += [
                f"{country_code}{local}",
                f"+{country_code}{local}",
                f"00{country_code}{local}",
            ]
            if trunk_prefix:
                candidates += [
                    f"{country_code}{trunk_prefix}{local}",
                    f"+{country_code}{trunk_prefix}{local}",
                ]

    # dict keeps insertion order
    return list(dict.fromkeys(candidates))
