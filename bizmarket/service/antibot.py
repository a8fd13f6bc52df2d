from __future__ import annotations

import time
from typing import Optional

from bizmarket.logging import get_logger
from bizmarket.service.errors import BotDetectedError

logger = get_logger(__name__)

# Form field hidden from humans by CSS; browsers with autofill leave it empty
HONEYPOT_FIELD = "website"
FORM_TIME_FIELD = "form_time"

HONEYPOT = "honeypot"
TOO_FAST = "too_fast"


def _now_ms() -> int:
    return int(time.time() * 1000)


def detect_bot(
    honeypot: Optional[str],
    form_time_ms: Optional[int],
    *,
    min_elapsed_ms: int,
    now_ms: Optional[int] = None,
) -> Optional[str]:
    """Return the tripped heuristic (``"honeypot"`` or ``"too_fast"``) or None.

    ``form_time_ms`` is the unix-millisecond timestamp the page stamped when
    the form rendered. A missing or non-positive timestamp passes.
    """
    if honeypot:
        return HONEYPOT
    if form_time_ms is None or form_time_ms <= 0:
        return None
    current = _now_ms() if now_ms is None else now_ms
    if current - form_time_ms < min_elapsed_ms:
        return TOO_FAST
    return None


def ensure_human(
    honeypot: Optional[str],
    form_time_ms: Optional[int],
    *,
    min_elapsed_ms: int,
    form: str,
    now_ms: Optional[int] = None,
) -> None:
    reason = detect_bot(honeypot, form_time_ms, min_elapsed_ms=min_elapsed_ms, now_ms=now_ms)
    if reason:
        logger.info("bot_submission_rejected", form=form, reason=reason)
        raise BotDetectedError(reason)
