from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Optional

from gps_server.record import (
    PROTOCOL_DP,
    PROTOCOL_STS,
    PROTOCOL_TM,
    PROTOCOL_ZLIV,
)


LOGGER = logging.getLogger("gps_server.classifier")
ENVELOPE_PATTERN = re.compile(r"\{.*\}")

# Order matters: the first matching prefix wins.
PREFIX_RULES = (
    ("$STS", PROTOCOL_STS),
    ("$DP", PROTOCOL_DP),
    ("$TM", PROTOCOL_TM),
    ("J", PROTOCOL_ZLIV),
)


@dataclass(frozen=True)
class ClassifiedMessage:
    protocol: Optional[str]
    text: str
    envelope_tag: Optional[str] = None


def unwrap_envelope(text: str) -> tuple[str, Optional[str]]:
    """Pull a `$`-prefixed frame out of a JSON wrapper such as {"tcp/ip": "$DP,..."}.

    Returns the text to decode and the tag derived from the wrapping key. Any
    problem with the wrapper leaves the text untouched.
    """
    if not text.startswith("{"):
        return text, None
    match = ENVELOPE_PATTERN.search(text)
    if match is None:
        return text, None
    try:
        payload = json.loads(match.group(0))
    except (ValueError, RecursionError) as exc:
        LOGGER.debug("malformed envelope ignored error=%s", str(exc))
        return text, None
    if not isinstance(payload, dict):
        return text, None

    for key, value in payload.items():
        if isinstance(value, str) and value.startswith("$"):
            return value, key.split("/", 1)[0]
    return text, None


def detect_protocol(text: str) -> Optional[str]:
    for prefix, protocol in PREFIX_RULES:
        if text.startswith(prefix):
            return protocol
    return None


def classify(text: str) -> ClassifiedMessage:
    working, envelope_tag = unwrap_envelope(text)
    return ClassifiedMessage(
        protocol=detect_protocol(working),
        text=working,
        envelope_tag=envelope_tag,
    )
