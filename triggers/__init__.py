"""External triggers that drive the session controller."""

from triggers.bus import BusTrigger
from triggers.http import HttpTrigger, coerce_duration, parse_duration
from triggers.signals import SignalTrigger

__all__ = [
    "BusTrigger",
    "HttpTrigger",
    "SignalTrigger",
    "coerce_duration",
    "parse_duration",
]
