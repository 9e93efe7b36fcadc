"""Allowlist sanitizer for note bodies received from relays.

Note content is rich text (HTML produced by the editor). Content fetched
from the network is untrusted, so before it is stored every element outside
the allowlist is dropped, script-like elements lose their text as well, and
attributes are limited to presentational ones plus safe links.
"""

import html
import logging
from html.parser import HTMLParser

logger = logging.getLogger(__name__)

ALLOWED_TAGS = {
    "a", "b", "blockquote", "br", "code", "div", "em", "h1", "h2", "h3", "h4",
    "h5", "h6", "hr", "i", "img", "li", "mark", "ol", "p", "pre", "s", "span",
    "strike", "strong", "sub", "sup", "table", "tbody", "td", "th", "thead",
    "tr", "u", "ul",
}
VOID_TAGS = {"br", "hr", "img"}
DROP_CONTENT_TAGS = {"script", "style", "iframe", "object", "embed", "noscript", "template"}
ALLOWED_ATTRIBUTES = {"class", "title", "href", "src", "alt", "colspan", "rowspan"}
URL_ATTRIBUTES = {"href", "src"}
SAFE_SCHEMES = ("http:", "https:", "mailto:", "nostr:")


def _is_safe_url(value: str) -> bool:
    url = "".join(value.split()).lower()
    if ":" not in url.split("/", 1)[0]:
        return True  # relative
    return url.startswith(SAFE_SCHEMES)


class _Sanitizer(HTMLParser):
    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.out: list[str] = []
        self._open: list[str] = []
        self._skip_depth = 0
        self.removed = 0

    def _attrs(self, attrs: list[tuple[str, str | None]]) -> str:
        parts = []
        for name, value in attrs:
            name = name.lower()
            if not (name in ALLOWED_ATTRIBUTES or name.startswith("data-")):
                self.removed += 1
                continue
            if name in URL_ATTRIBUTES and (value is None or not _is_safe_url(value)):
                self.removed += 1
                continue
            if value is None:
                parts.append(f" {name}")
            else:
                parts.append(f' {name}="{html.escape(value, quote=True)}"')
        return "".join(parts)

    def handle_starttag(self, tag, attrs):
        if tag in DROP_CONTENT_TAGS:
            self._skip_depth += 1
            self.removed += 1
            return
        if self._skip_depth:
            return
        if tag not in ALLOWED_TAGS:
            self.removed += 1
            return
        self.out.append(f"<{tag}{self._attrs(attrs)}>")
        if tag not in VOID_TAGS:
            self._open.append(tag)

    def handle_startendtag(self, tag, attrs):
        if tag in DROP_CONTENT_TAGS or self._skip_depth:
            return
        if tag not in ALLOWED_TAGS:
            self.removed += 1
            return
        self.out.append(f"<{tag}{self._attrs(attrs)}>")
        if tag not in VOID_TAGS:
            self.out.append(f"</{tag}>")

    def handle_endtag(self, tag):
        if tag in DROP_CONTENT_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
            return
        if self._skip_depth or tag not in self._open:
            return
        # close anything left open inside this element
        while self._open:
            open_tag = self._open.pop()
            self.out.append(f"</{open_tag}>")
            if open_tag == tag:
                break

    def handle_data(self, data):
        if not self._skip_depth:
            self.out.append(html.escape(data, quote=False))

    def get_html(self) -> str:
        while self._open:
            self.out.append(f"</{self._open.pop()}>")
        return "".join(self.out)


def sanitize_html(content: str) -> str:
    """Return content with unsafe markup removed.

    Text without any markup is returned unchanged.
    """
    if "<" not in content:
        return content

    parser = _Sanitizer()
    parser.feed(content)
    parser.close()
    cleaned = parser.get_html()

    if parser.removed:
        logger.debug(f"Sanitizer removed {parser.removed} unsafe elements or attributes")
    return cleaned
