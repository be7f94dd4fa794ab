"""Pairing challenges and how they are shown to a human.

When the gateway has no valid credentials it issues a pairing challenge:
a QR image to scan from WhatsApp > Linked devices, or a short code to
type on the phone. The lifecycle manager never renders these itself; it
hands them to a presenter callback.
"""

import base64
import binascii
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable

from rich.console import Console
from rich.panel import Panel

logger = logging.getLogger(__name__)


class ChallengeKind(str, Enum):
    QR_IMAGE = "qr_image"  # payload is a base64-encoded PNG
    CODE = "code"          # payload is a text pairing code


@dataclass(frozen=True)
class PairingChallenge:
    """A short-lived pairing payload issued by the gateway."""
    payload: str
    kind: ChallengeKind = ChallengeKind.QR_IMAGE
    issued_at: float = field(default_factory=time.time, compare=False)

    def image_bytes(self) -> bytes | None:
        """Decoded PNG for QR challenges, None for codes or bad payloads."""
        if self.kind != ChallengeKind.QR_IMAGE:
            return None
        data = self.payload
        if data.startswith("data:"):
            data = data.split(",", 1)[-1]
        try:
            return base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("Pairing challenge is not valid base64")
            return None

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "issuedAt": self.issued_at}


ChallengePresenter = Callable[[PairingChallenge], Awaitable[None] | None]


class TerminalPresenter:
    """Prints pairing instructions to the terminal.

    QR images are written to <output_dir>/pairing-qr.png so they can be
    opened from any image viewer; codes are printed directly.
    """

    def __init__(
        self,
        output_dir: Path,
        console: Console | None = None,
        pairing_url: str | None = None,
    ):
        self.output_dir = Path(output_dir)
        self.console = console or Console(stderr=True)
        self.pairing_url = pairing_url

    @property
    def image_path(self) -> Path:
        return self.output_dir / "pairing-qr.png"

    def __call__(self, challenge: PairingChallenge) -> None:
        if challenge.kind == ChallengeKind.CODE:
            body = (
                f"Pairing code: [bold]{challenge.payload}[/bold]\n\n"
                "On your phone: WhatsApp > Linked devices > Link with phone number"
            )
        else:
            png = challenge.image_bytes()
            if png is None:
                return
            self.output_dir.mkdir(parents=True, exist_ok=True)
            self.image_path.write_bytes(png)
            body = (
                f"QR code saved to: [bold]{self.image_path}[/bold]\n\n"
                "On your phone: WhatsApp > Linked devices > Link a device"
            )
            if self.pairing_url:
                body += f"\nOr open: {self.pairing_url}"

        self.console.print(Panel(
            body,
            title="📱 Link WhatsApp",
            border_style="cyan",
        ))
