"""Sender access policy for direct and group messages."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

DM_MODES = frozenset({"open", "pairing", "allowlist", "disabled"})
GROUP_MODES = frozenset({"open", "allowlist", "disabled"})

_NON_PHONE_RE = re.compile(r"[^0-9+]")
_E164_RE = re.compile(r"^\+?[0-9]+$")


def normalize_e164(phone: str) -> str | None:
    """Canonical "+<digits>" form, or None if the input isn't a phone number."""
    if not phone:
        return None
    cleaned = _NON_PHONE_RE.sub("", phone)
    if not _E164_RE.match(cleaned):
        return None
    return cleaned if cleaned.startswith("+") else f"+{cleaned}"


def _matches(sender: str, allowed: list[str]) -> bool:
    if "*" in allowed:
        return True
    sender_e164 = normalize_e164(sender)
    for entry in allowed:
        if entry == sender or entry == f"uuid:{sender}":
            return True
        if sender_e164 is not None and normalize_e164(entry) == sender_e164:
            return True
    return False


@dataclass(frozen=True)
class AllowPolicy:
    dm: str = "pairing"
    group: str = "allowlist"
    allow_from: tuple[str, ...] = field(default_factory=tuple)
    group_allow_from: tuple[str, ...] | None = None

    def mode(self, is_group: bool) -> str:
        return self.group if is_group else self.dm

    def allowed_senders(self, is_group: bool) -> list[str]:
        if is_group and self.group_allow_from is not None:
            return list(self.group_allow_from)
        return list(self.allow_from)

    def is_allowed(self, sender: str, is_group: bool) -> bool:
        """Decide whether a sender may reach the router for this scope."""
        mode = self.mode(is_group)
        if mode == "disabled":
            return False
        if mode == "open":
            return True
        if mode == "pairing" and not is_group:
            # Unknown DM senders still get through; trust is decided downstream
            return True
        return _matches(sender, self.allowed_senders(is_group))
