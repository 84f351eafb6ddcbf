"""
Unsubscribe link detection for newsletters.

Two sources are understood: anchors in the HTML body and the RFC 2369
``List-Unsubscribe`` header. In both, http(s) targets beat ``mailto:``.
"""
import re
from typing import Iterable, List, Optional

from bs4 import BeautifulSoup

# Matched case-insensitively against the href and the visible anchor text
UNSUBSCRIBE_KEYWORDS = (
    # English
    "unsubscribe",
    "opt-out",
    "opt out",
    "stop receiving",
    "manage preferences",
    "email preferences",
    "update preferences",
    "subscription preferences",
    # Traditional Chinese
    "取消訂閱",
    "退訂",
    # Simplified Chinese
    "取消订阅",
    # Japanese
    "配信停止",
    "購読解除",
)

_HEADER_TARGET = re.compile(r"<([^>]+)>")


def _has_keyword(*haystacks: str) -> bool:
    return any(k in h for h in haystacks for k in UNSUBSCRIBE_KEYWORDS)


def _pick(candidates: Iterable[str]) -> Optional[str]:
    http: List[str] = []
    mailto: List[str] = []
    for href in candidates:
        if href.startswith(("http://", "https://")):
            http.append(href)
        elif href.startswith("mailto:"):
            mailto.append(href)
    if http:
        return http[0]
    if mailto:
        return mailto[0]
    return None


def extract_unsubscribe_url_from_html(html: Optional[str]) -> Optional[str]:
    if not html:
        return None
    soup = BeautifulSoup(html, "html.parser")
    qualifying = []
    for a in soup.find_all("a", href=True):
        href = str(a["href"]).strip()
        text = a.get_text().lower()
        if _has_keyword(text, href.lower()):
            qualifying.append(href)
    return _pick(qualifying)


def extract_unsubscribe_url_from_header(value: Optional[str]) -> Optional[str]:
    """Parse ``List-Unsubscribe: <https://...>, <mailto:...>``."""
    if not value:
        return None
    return _pick(t.strip() for t in _HEADER_TARGET.findall(value))
