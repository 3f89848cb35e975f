"""
User-agent based device classification.

Rules are an ordered table of (category, pattern); the first matching rule
wins. TV rules run before tablet rules, tablet before mobile and mobile before
desktop operating systems, because many TV and tablet user agents also carry
"Android", "Mobile" or "Linux".
"""

import re
from typing import Optional, Pattern, Sequence, Tuple

from models import DeviceCategory


def _keywords(*tokens: str) -> Pattern:
    """Compile regex fragments into one case-insensitive alternation."""
    return re.compile("|".join(f"(?:{t})" for t in tokens), re.IGNORECASE)


TV_PATTERN = _keywords(
    r"smart-?tv", r"smart tv", r"\btv\b", r"googletv", r"google tv", r"android tv",
    r"appletv", r"apple tv", r"roku", r"crkey", r"chromecast", r"firetv", r"fire tv",
    r"\baft[a-z]{1,4}\b", r"bravia", r"sonydtv", r"web0s", r"webos", r"netcast",
    r"nettv", r"hbbtv", r"ce-html", r"vidaa", r"philipstv", r"shield android",
    r"mibox", r"mi box", r"playstation", r"xbox", r"xbmc", r"kodi", r"boxee",
    r"tivimate", r"stbapp", r"\bmag\d{3}\b", r"formuler",
)

TABLET_PATTERN = _keywords(
    r"tablet", r"ipad", r"kindle", r"silk/", r"playbook", r"nexus (?:7|9|10)\b",
    r"xoom", r"\bsm-[tp]\d", r"\bgt-p\d", r"\bsgp\d", r"lenovo tab", r"mediapad",
    r"matepad", r"galaxy tab", r"android 3\.",
)

MOBILE_PATTERN = _keywords(
    r"mobile", r"iphone", r"ipod", r"android", r"blackberry", r"\bbb10\b",
    r"opera mini", r"opera mobi", r"windows phone", r"iemobile", r"symbian",
    r"series60", r"windows ce", r"palm", r"ucweb", r"meego",
)

PC_PATTERN = _keywords(
    r"windows nt", r"windows", r"macintosh", r"mac os x", r"x11", r"linux",
    r"\bcros\b", r"ubuntu", r"fedora", r"freebsd",
)

DEFAULT_RULES: Tuple[Tuple[DeviceCategory, Pattern], ...] = (
    (DeviceCategory.TV, TV_PATTERN),
    (DeviceCategory.TABLET, TABLET_PATTERN),
    (DeviceCategory.MOBILE, MOBILE_PATTERN),
    (DeviceCategory.PC, PC_PATTERN),
)


class DeviceClassifier:
    """Pure, side-effect free classifier over an ordered rule table"""

    def __init__(self, rules: Optional[Sequence[Tuple[DeviceCategory, Pattern]]] = None):
        self.rules = tuple(rules) if rules is not None else DEFAULT_RULES

    def classify(self, user_agent: Optional[str]) -> DeviceCategory:
        if not user_agent or not user_agent.strip():
            return DeviceCategory.UNKNOWN
        for category, pattern in self.rules:
            if pattern.search(user_agent):
                return category
        return DeviceCategory.UNKNOWN


default_classifier = DeviceClassifier()


def classify(user_agent: Optional[str]) -> DeviceCategory:
    return default_classifier.classify(user_agent)
