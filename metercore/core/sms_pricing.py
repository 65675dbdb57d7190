"""SMS page and credit arithmetic.

GSM-7 text fits 160 characters in one page and 153 per page once split;
any non-ASCII character switches the message to UCS-2 (70 / 67).
"""

import math
import re

_NON_ASCII = re.compile(r"[^\x00-\x7F]")

GSM_SINGLE_PAGE = 160
GSM_MULTI_PAGE = 153
UNICODE_SINGLE_PAGE = 70
UNICODE_MULTI_PAGE = 67


def is_unicode(text: str) -> bool:
    return bool(_NON_ASCII.search(text))


def page_count(text: str) -> int:
    """Number of SMS pages ``text`` is billed as (0 for empty text)."""
    if not text:
        return 0
    length = len(text)
    if is_unicode(text):
        single, multi = UNICODE_SINGLE_PAGE, UNICODE_MULTI_PAGE
    else:
        single, multi = GSM_SINGLE_PAGE, GSM_MULTI_PAGE
    if length <= single:
        return 1
    return math.ceil((length - single) / multi) + 1


def credits_per_recipient(text: str, credits_per_page: int) -> int:
    return page_count(text) * credits_per_page


def credits_for(text: str, recipient_count: int, credits_per_page: int) -> int:
    """Credits required to send ``text`` to ``recipient_count`` recipients."""
    return credits_per_recipient(text, credits_per_page) * recipient_count
