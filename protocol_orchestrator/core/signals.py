"""Strict terminal-signal grammar for agent output.

An agent finishes by printing exactly one signal tag as the last
non-blank line of its output::

    <signal>PHASE_COMPLETE</signal>
    <signal>BLOCKED:missing API credentials</signal>

Anything else (no tag, several tags, a tag followed by more text, an
unknown token, a lowercase or misspelled token) is "no signal". The
parser never guesses intent.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from protocol_orchestrator.core.protocol import DEFAULT_SIGNALS, SignalKind

SIGNAL_TAG = re.compile(r"<signal>(.*?)</signal>", re.DOTALL)
_ANY_TAG = re.compile(r"</?\s*signal\b", re.IGNORECASE)
_TOKEN = re.compile(r"^(?P<kind>[A-Z][A-Z_]*)(?::(?P<reason>.*))?$")


@dataclass(frozen=True)
class Signal:
    """A terminal signal emitted by an agent."""

    kind: SignalKind
    reason: str | None = None

    @property
    def token(self) -> str:
        if self.reason:
            return f"{self.kind.value}:{self.reason}"
        return self.kind.value

    @property
    def is_complete(self) -> bool:
        return self.kind == SignalKind.PHASE_COMPLETE


@dataclass(frozen=True)
class SignalParseResult:
    """Outcome of parsing agent output."""

    signal: Signal | None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.signal is not None


def format_signal(kind: SignalKind, reason: str | None = None) -> str:
    """Render a signal the way an agent must emit it."""
    return f"<signal>{Signal(kind, reason).token}</signal>"


def parse_signal(output: str, vocabulary: tuple[str, ...] = DEFAULT_SIGNALS) -> SignalParseResult:
    """
    Extract the terminal signal from agent output.

    Args:
        output: Full agent output.
        vocabulary: Signal kinds allowed by the protocol.

    Returns:
        SignalParseResult with the signal, or an error describing why the
        output carries no valid signal.
    """
    if not output or not output.strip():
        return SignalParseResult(None, "empty output")

    tags = SIGNAL_TAG.findall(output)
    loose = _ANY_TAG.findall(output)
    if not tags:
        if loose:
            return SignalParseResult(None, "malformed signal tag")
        return SignalParseResult(None, "no signal tag")

    # Every opening and closing tag must belong to a well-formed pair
    if len(tags) != 1 or len(loose) != 2:
        return SignalParseResult(None, f"expected exactly one signal, found {len(tags)}")

    last_line = output.strip().splitlines()[-1].strip()
    if not SIGNAL_TAG.fullmatch(last_line):
        return SignalParseResult(None, "signal is not the last line of output")

    token = tags[0].strip()
    match = _TOKEN.match(token)
    if not match:
        return SignalParseResult(None, f"unrecognized signal token '{token}'")

    kind_name = match.group("kind")
    if kind_name not in vocabulary:
        return SignalParseResult(None, f"signal '{kind_name}' not in protocol vocabulary")

    try:
        kind = SignalKind(kind_name)
    except ValueError:
        return SignalParseResult(None, f"signal '{kind_name}' is not a terminal signal")

    reason = match.group("reason")
    if reason is not None:
        reason = reason.strip()
        if kind != SignalKind.BLOCKED:
            return SignalParseResult(None, f"{kind_name} does not take a reason")
        if not reason:
            return SignalParseResult(None, "BLOCKED: requires a reason after the colon")

    return SignalParseResult(Signal(kind, reason or None))
