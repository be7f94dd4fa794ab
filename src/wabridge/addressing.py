"""Recipient address normalization.

Turns whatever the caller typed ("+966 51 234 5678", "0512345678",
"512345678") into the address the gateway understands:

    512345678       -> 966512345678@s.whatsapp.net   (bare national number)
    966512345678    -> 966512345678@s.whatsapp.net
    12025550143     -> 12025550143@s.whatsapp.net    (other international)
    12345           -> None                           (too short)
"""

import re
from dataclasses import dataclass

JID_SUFFIX = "@s.whatsapp.net"
DEFAULT_COUNTRY_CODE = "966"
NATIONAL_NUMBER_LENGTH = 9
MIN_NUMBER_LENGTH = 10

_NON_DIGITS = re.compile(r"[^0-9]")


@dataclass(frozen=True)
class RecipientAddress:
    """A normalized, immutable recipient identifier."""
    number: str  # digits only, country code included

    @property
    def jid(self) -> str:
        return f"{self.number}{JID_SUFFIX}"

    def __str__(self) -> str:
        return self.jid

    @classmethod
    def parse(
        cls,
        raw: str,
        default_country_code: str = DEFAULT_COUNTRY_CODE,
    ) -> "RecipientAddress | None":
        """Parse a raw phone string. Returns None if it can't be an address."""
        if not raw:
            return None
        # Only the user part of an existing JID counts
        digits = _NON_DIGITS.sub("", raw.split("@", 1)[0])

        if (
            default_country_code
            and not digits.startswith(default_country_code)
            and len(digits) == NATIONAL_NUMBER_LENGTH
        ):
            digits = default_country_code + digits

        if (
            default_country_code
            and digits.startswith(default_country_code)
            and len(digits) == len(default_country_code) + NATIONAL_NUMBER_LENGTH
        ):
            return cls(digits)

        if len(digits) >= MIN_NUMBER_LENGTH:
            return cls(digits)

        return None


def normalize_recipient(
    raw: str,
    default_country_code: str = DEFAULT_COUNTRY_CODE,
) -> str | None:
    """Normalize a raw phone string into a JID, or None if invalid."""
    address = RecipientAddress.parse(raw, default_country_code)
    return address.jid if address else None
