"""Outgoing HTML shaping for open/click tracking."""

from __future__ import annotations

import base64
import html
import re
import secrets
import time
from urllib.parse import quote

TRACKING_PIXEL_GIF = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")
TRACKING_PIXEL_HEADERS = {"Cache-Control": "no-cache, no-store, must-revalidate"}

_LINK_PATTERN = re.compile(r'<a\s+(?:[^>]*?\s+)?href="([^"]*)"', re.IGNORECASE)


def mint_tracking_id() -> str:
    return f"{int(time.time() * 1000)}-{secrets.token_hex(6)}"


def open_url(base_url: str, tracking_id: str) -> str:
    return f"{base_url.rstrip('/')}/api/track/open/{tracking_id}"


def click_url(base_url: str, tracking_id: str, target: str) -> str:
    return f"{base_url.rstrip('/')}/api/track/click/{tracking_id}?url={quote(target, safe='')}"


def text_to_html(text: str) -> str:
    paragraphs = text.split("\n\n")
    return "".join(f"<p>{html.escape(paragraph).replace(chr(10), '<br>')}</p>" for paragraph in paragraphs)


def wrap_links(body_html: str, base_url: str, tracking_id: str) -> str:
    def _rewrite(match: re.Match[str]) -> str:
        original = match.group(1)
        start, end = match.span(1)
        offset = match.start(0)
        tag = match.group(0)
        return tag[: start - offset] + click_url(base_url, tracking_id, html.unescape(original)) + tag[end - offset :]

    return _LINK_PATTERN.sub(_rewrite, body_html)


def append_open_pixel(body_html: str, base_url: str, tracking_id: str) -> str:
    return body_html + f'<img src="{open_url(base_url, tracking_id)}" width="1" height="1" alt="" />'


def render_email_html(
    *,
    body: str,
    body_html: str | None,
    base_url: str,
    tracking_id: str | None,
    track_opens: bool,
    track_clicks: bool,
) -> str:
    content = body_html or text_to_html(body)
    if tracking_id is None:
        return content
    if track_clicks:
        content = wrap_links(content, base_url, tracking_id)
    if track_opens:
        content = append_open_pixel(content, base_url, tracking_id)
    return content
