from __future__ import annotations

import re
from dataclasses import dataclass


@dataclass(frozen=True)
class Hotline:
    name: str
    number: str

    @property
    def dial_url(self) -> str:
        return tel_url(self.number)


EMERGENCY_HOTLINES: tuple[Hotline, ...] = (
    Hotline(name="Emergency Services", number="911"),
    Hotline(name="Poison Control", number="1-800-222-1222"),
    Hotline(name="Ambulance", number="102"),
    Hotline(name="Mental Health Crisis", number="988"),
)


def tel_url(number: str) -> str:
    digits = re.sub(r"[^\d+]", "", number)
    if not digits:
        raise ValueError("number must contain at least one digit")
    return f"tel:{digits}"
