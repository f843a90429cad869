"""Public reference codes.

Each entry gets a short code customers can read out at the counter. Codes are
drawn from 36^6 (~2.2e9) values, so a collision is rare; when one happens we
draw again, a bounded number of times.
"""

from __future__ import annotations

import logging
import random
import string
from typing import Callable

from .errors import CodeSpaceExhausted

logger = logging.getLogger(__name__)

CODE_LENGTH = 6
CODE_ALPHABET = string.ascii_uppercase + string.digits
DEFAULT_MAX_ATTEMPTS = 5

_system_rng = random.SystemRandom()


def random_code(*, rng: random.Random | None = None, length: int = CODE_LENGTH) -> str:
    """Draw one candidate code.

    Args:
        rng: optional RNG (useful for deterministic tests). Defaults to the
            OS entropy source.
    """
    r = rng or _system_rng
    return "".join(r.choice(CODE_ALPHABET) for _ in range(length))


def generate_unique_code(
    *,
    is_taken: Callable[[str], bool],
    rng: random.Random | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> str:
    """Return a code for which `is_taken` is False.

    `is_taken` must look at every entry ever stored, terminal ones included,
    because codes are never reused.

    Raises:
        CodeSpaceExhausted: every attempt collided.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    for attempt in range(1, max_attempts + 1):
        code = random_code(rng=rng)
        if not is_taken(code):
            return code
        logger.warning("public code collision on attempt %d/%d", attempt, max_attempts)

    logger.error("could not find a free public code after %d attempts", max_attempts)
    raise CodeSpaceExhausted(f"no free public code after {max_attempts} attempts")
