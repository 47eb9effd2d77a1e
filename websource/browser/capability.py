"""Browser capability boundary used by the daemon and its clients.

- `BrowserHandle.connect(endpoint)` attaches to a running browser.
- `handle.attach_or_create_page()` reuses the first page target or opens one.
- `probe_endpoint(endpoint)` is the liveness probe behind `SessionStore.is_active`.
"""

from __future__ import annotations

import logging
from contextlib import suppress
from typing import Any
from urllib.parse import urlsplit

from .cdp import CdpConnection
from .errors import CdpError
from .page import BrowserPage

_LOGGER = logging.getLogger("websource.browser.capability")


def probe_endpoint(endpoint: str, timeout: float = 2.0) -> bool:
    """True if a browser answers on `endpoint`; any failure means inactive."""
    if not endpoint:
        return False
    try:
        conn = CdpConnection(endpoint, timeout=timeout)
    except CdpError as exc:
        _LOGGER.debug("endpoint %s unreachable: %s", endpoint, exc)
        return False
    try:
        conn.send("Browser.getVersion")
        return True
    except CdpError as exc:
        _LOGGER.debug("endpoint %s did not answer: %s", endpoint, exc)
        return False
    finally:
        conn.close()


def page_ws_url(endpoint: str, target_id: str) -> str:
    """Page websocket URL on the same host:port as the browser endpoint."""
    parts = urlsplit(endpoint)
    scheme = parts.scheme or "ws"
    return f"{scheme}://{parts.netloc}/devtools/page/{target_id}"


class BrowserHandle:
    """Attachment to a running browser through its browser-level CDP endpoint."""

    def __init__(self, connection: CdpConnection, endpoint: str, *, page_timeout: float = 30.0) -> None:
        self.conn = connection
        self.endpoint = endpoint
        self.page_timeout = float(page_timeout)

    @classmethod
    def connect(cls, endpoint: str, *, timeout: float = 5.0, page_timeout: float = 30.0) -> BrowserHandle:
        return cls(CdpConnection(endpoint, timeout=timeout), endpoint, page_timeout=page_timeout)

    def page_targets(self) -> list[dict[str, Any]]:
        result = self.conn.send("Target.getTargets")
        infos = result.get("targetInfos") or []
        return [t for t in infos if isinstance(t, dict) and t.get("type") == "page"]

    def create_page(self, url: str = "about:blank") -> str:
        result = self.conn.send("Target.createTarget", {"url": url})
        target_id = result.get("targetId")
        if not target_id:
            raise CdpError("Failed to create browser tab")
        return str(target_id)

    def attach_or_create_page(self) -> BrowserPage:
        targets = self.page_targets()
        if targets:
            target_id = str(targets[0].get("targetId"))
            url = str(targets[0].get("url") or "")
        else:
            target_id = self.create_page()
            url = "about:blank"
        conn = CdpConnection(page_ws_url(self.endpoint, target_id), timeout=self.page_timeout)
        return BrowserPage(conn, target_id=target_id, url=url)

    def close(self) -> None:
        """Close the browser itself (all pages), then drop the connection."""
        try:
            self.conn.send("Browser.close")
        except CdpError as exc:
            # The browser tends to drop the socket before acknowledging Browser.close.
            _LOGGER.debug("Browser.close: %s", exc)
        finally:
            self.disconnect()

    def disconnect(self) -> None:
        with suppress(Exception):
            self.conn.close()


__all__ = ["BrowserHandle", "page_ws_url", "probe_endpoint"]
