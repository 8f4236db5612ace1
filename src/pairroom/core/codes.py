"""Invite code generation."""

from __future__ import annotations

import logging
import random
import warnings

from pairroom.config import DEFAULT_ALPHABET

logger = logging.getLogger("pairroom.codes")

__all__ = ["CodeGenerator", "DegradedRandomnessWarning"]


class DegradedRandomnessWarning(RuntimeWarning):
    """Invite codes are being drawn from a non-cryptographic source."""


class CodeGenerator:
    """Draws fixed-length codes uniformly from an alphanumeric alphabet.

    The strong source is ``random.SystemRandom`` (``os.urandom``). If it
    raises ``NotImplementedError`` the generator switches to a seeded
    ``random.Random``, issues a :class:`DegradedRandomnessWarning` and sets
    :attr:`degraded`. Uniqueness is the registry's concern.
    """

    def __init__(
        self,
        length: int = 6,
        alphabet: str = DEFAULT_ALPHABET,
        *,
        strong: random.Random | None = None,
        weak: random.Random | None = None,
    ) -> None:
        if length < 1:
            raise ValueError("length must be positive")
        self._length = length
        self._alphabet = alphabet
        self._strong = strong or random.SystemRandom()
        self._weak = weak
        self._degraded = False

    @property
    def length(self) -> int:
        return self._length

    @property
    def alphabet(self) -> str:
        return self._alphabet

    @property
    def degraded(self) -> bool:
        """True once the weak fallback source has been used."""
        return self._degraded

    def generate(self, length: int | None = None) -> str:
        """Return a new code of *length* characters (default: configured length)."""
        n = length if length is not None else self._length
        if n < 1:
            raise ValueError("length must be positive")
        if not self._degraded:
            try:
                return "".join(self._strong.choice(self._alphabet) for _ in range(n))
            except NotImplementedError:
                self._fall_back()
        assert self._weak is not None
        return "".join(self._weak.choice(self._alphabet) for _ in range(n))

    def _fall_back(self) -> None:
        self._degraded = True
        if self._weak is None:
            self._weak = random.Random()  # noqa: S311  # nosec B311
        logger.warning("No cryptographic random source available; invite codes are degraded")
        warnings.warn(
            "invite codes are generated from a non-cryptographic random source",
            DegradedRandomnessWarning,
            stacklevel=3,
        )
