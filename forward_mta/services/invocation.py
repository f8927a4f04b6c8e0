"""
Command-line invocation capture.

sendmail callers pass arbitrary flags; the only one interpreted is the
``-f<address>`` envelope-sender flag (see services.sender_identity). The
rest is echoed into the diagnostic report.
"""

import sys
from dataclasses import dataclass
from typing import Optional, Sequence


def _is_valid_text(arg: str) -> bool:
    # Python maps undecodable argv bytes to lone surrogates.
    try:
        arg.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def _lossy(arg: str) -> str:
    return arg.encode("utf-8", "surrogateescape").decode("utf-8", "replace")


@dataclass(frozen=True)
class InvocationArgs:
    """The full argv (program name first), tagged lossy if any arg is not UTF-8."""
    args: tuple[str, ...]
    lossy: bool = False

    @classmethod
    def from_argv(cls, argv: Optional[Sequence[str]] = None) -> "InvocationArgs":
        if argv is None:
            argv = sys.argv
        if all(_is_valid_text(a) for a in argv):
            return cls(args=tuple(argv), lossy=False)
        return cls(args=tuple(_lossy(a) for a in argv), lossy=True)

    def display(self) -> str:
        prefix = "(non-utf-8) " if self.lossy else ""
        return f"{prefix}{list(self.args)!r}"
