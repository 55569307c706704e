# Overview: Cryptographically random warranty code generation.

"""
Barcode Code Generator

WHY secrets: codes are bearer tokens for a warranty entitlement and must be
unguessable, so they come from the OS CSPRNG, never from `random`.

DESIGN:
- Codes are opaque: no tenant, product or date is encoded
- Default alphabet is 32 unambiguous symbols (no 0/O, 1/I), 5 bits each
- Entropy of the random part must be >= 80 bits; the optional prefix
  (<= 4 chars, operator readability only) does not count towards it
"""

from __future__ import annotations

import math
import re
import secrets
from typing import Callable, Optional

from ..errors import ValidationError

MAX_PREFIX_LENGTH = 4
MIN_ENTROPY_BITS = 80
_PREFIX_RE = re.compile(r"^[A-Z0-9]{1,4}$")


def normalize_prefix(prefix: Optional[str]) -> Optional[str]:
    if prefix is None:
        return None
    prefix = prefix.strip().upper()
    if not prefix:
        return None
    if not _PREFIX_RE.match(prefix):
        raise ValidationError(
            f"prefix must be 1-{MAX_PREFIX_LENGTH} characters A-Z or 0-9",
            details={"field": "prefix"},
        )
    return prefix


class CodeGenerator:
    """
    Produces random code strings of a fixed length over an alphabet.

    randbits is injectable so tests can drive collisions deterministically.
    """

    def __init__(
        self,
        alphabet: str,
        length: int,
        *,
        prefix: Optional[str] = None,
        randbits: Callable[[int], int] = secrets.randbits,
    ):
        if len(set(alphabet)) != len(alphabet) or len(alphabet) < 2:
            raise ValidationError("alphabet must contain at least 2 distinct symbols")
        self.alphabet = alphabet
        self.length = length
        self.prefix = normalize_prefix(prefix)
        self._randbits = randbits
        self._bits_per_symbol = int(math.log2(len(alphabet)))
        self._power_of_two = (1 << self._bits_per_symbol) == len(alphabet)
        if self.entropy_bits < MIN_ENTROPY_BITS:
            raise ValidationError(
                f"code entropy {self.entropy_bits:.1f} bits is below the {MIN_ENTROPY_BITS}-bit floor",
                details={"length": length, "alphabet_size": len(alphabet)},
            )

    @property
    def entropy_bits(self) -> float:
        return self.length * math.log2(len(self.alphabet))

    def generate(self) -> str:
        return (self.prefix or "") + self._random_part()

    def generate_many(self, count: int) -> list[str]:
        return [self.generate() for _ in range(count)]

    def _random_part(self) -> str:
        alphabet = self.alphabet
        if self._power_of_two:
            bits = self._bits_per_symbol
            mask = (1 << bits) - 1
            value = self._randbits(bits * self.length)
            chars = []
            for _ in range(self.length):
                chars.append(alphabet[value & mask])
                value >>= bits
            return "".join(chars)
        return "".join(secrets.choice(alphabet) for _ in range(self.length))
