"""
Phone comparison for payment matching.

Checkout stores WhatsApp numbers as typed by the customer ("(11) 98765-4321",
"+55 11 98765-4321"), while Cakto sends whatever the buyer typed on its own
form. Numbers are compared on digits only, tolerating a missing or extra
country/area-code prefix on either side.
"""
import re
from typing import Optional

_NON_DIGITS = re.compile(r"\D")

# A suffix shorter than this is too ambiguous to identify a customer
MIN_SUFFIX_MATCH_DIGITS = 8


def digits_only(phone: Optional[str]) -> str:
    """Strip everything but digits. None/empty -> ''."""
    if not phone:
        return ""
    return _NON_DIGITS.sub("", str(phone))


def phones_match(stored: Optional[str], received: Optional[str]) -> bool:
    """
    True when the two numbers are equal, or one is a suffix of the other
    (prefix drift like 5511987654321 vs 11987654321).

    Suffix matches need at least MIN_SUFFIX_MATCH_DIGITS digits on the shorter
    side: a plain "ends with" would let "4321" pay any order ending in 4321.
    Exact equality has no floor.
    """
    a = digits_only(stored)
    b = digits_only(received)
    if not a or not b:
        return False
    if a == b:
        return True
    if min(len(a), len(b)) < MIN_SUFFIX_MATCH_DIGITS:
        return False
    return a.endswith(b) or b.endswith(a)
