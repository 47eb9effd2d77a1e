"""Page-level browser operations over a CDP page connection."""

from __future__ import annotations

import base64
import json
import time
from contextlib import suppress
from pathlib import Path
from typing import Any

from .cdp import CdpConnection
from .errors import (
    CapabilityError,
    CaptureError,
    CdpError,
    ElementNotFoundError,
    EvaluationError,
    NavigationTimeoutError,
)

COMMON_SELECTORS = [
    "body", "main", "header", "footer", "nav", "section", "article",
    "div", "p", "h1", "h2", "h3", "h4", "h5", "h6",
    "a", "img", "ul", "ol", "li", "table", "tr", "td", "th",
    "form", "input", "button", "textarea", "select",
]  # fmt: skip

_PAGE_INFO_JS = """(() => ({
  url: window.location.href,
  title: document.title,
  ready: document.readyState === 'complete'
}))()"""

_PAGE_OVERVIEW_JS = """(() => {
  const common = %(common)s;
  const allElements = Array.from(document.querySelectorAll('*'));
  const tagCounts = {};
  const idSelectors = [];
  const classSelectors = [];
  allElements.forEach(el => {
    const tag = el.tagName.toLowerCase();
    tagCounts[tag] = (tagCounts[tag] || 0) + 1;
    if (el.id) idSelectors.push('#' + el.id);
    if (el.className && typeof el.className === 'string') {
      el.className.split(' ').forEach(cls => {
        const selector = '.' + cls.trim();
        if (cls.trim() && !classSelectors.includes(selector)) classSelectors.push(selector);
      });
    }
  });
  return {
    totalElements: allElements.length,
    tagTypes: Object.keys(tagCounts).sort(),
    tagCounts: tagCounts,
    idSelectors: idSelectors.sort(),
    classSelectors: classSelectors.sort(),
    commonSelectors: common.filter(tag => tagCounts[tag])
  };
})()"""

_CHILD_SELECTORS_JS = """((sel) => {
  const parent = document.querySelector(sel);
  if (!parent) return {found: false};
  const children = Array.from(parent.children);
  return {
    found: true,
    parentSelector: sel,
    parentTag: parent.tagName.toLowerCase(),
    directChildren: children.length,
    totalDescendants: parent.querySelectorAll('*').length,
    childSelectors: children.map((child, index) => {
      const tagName = child.tagName.toLowerCase();
      return {
        index: index,
        tagName: tagName,
        selector: sel + ' > ' + tagName + ':nth-child(' + (index + 1) + ')',
        id: child.id ? '#' + child.id : null,
        classes: (child.className && typeof child.className === 'string')
          ? child.className.split(' ').filter(c => c.trim()).map(c => '.' + c) : [],
        textContent: child.textContent,
        hasChildren: child.children.length > 0,
        childCount: child.children.length
      };
    })
  };
})(%(selector)s)"""

_ELEMENT_JS = """((sel) => {
  const element = document.querySelector(sel);
  if (!element) return {found: false};
  const computed = window.getComputedStyle(element);
  const rect = element.getBoundingClientRect();
  const attributes = {};
  Array.from(element.attributes).forEach(attr => { attributes[attr.name] = attr.value; });
  return {
    found: true,
    tagName: element.tagName,
    id: element.id,
    className: typeof element.className === 'string' ? element.className : '',
    textContent: element.textContent,
    attributes: attributes,
    boundingBox: {x: rect.x, y: rect.y, width: rect.width, height: rect.height},
    computed: {
      display: computed.display,
      position: computed.position,
      visibility: computed.visibility,
      opacity: computed.opacity,
      zIndex: computed.zIndex,
      backgroundColor: computed.backgroundColor,
      color: computed.color,
      fontSize: computed.fontSize,
      fontFamily: computed.fontFamily
    },
    isVisible: rect.width > 0 && rect.height > 0
      && computed.visibility !== 'hidden' && computed.display !== 'none'
  };
})(%(selector)s)"""

_PAGE_CONTENT_JS = """(() => ({
  title: document.title,
  url: window.location.href,
  html: document.documentElement.outerHTML,
  text: document.body ? document.body.innerText : ''
}))()"""

# The source is evaluated in global scope, untouched; only the result is made JSON-safe.
_EVALUATE_JS = """((code) => {
  try {
    const raw = (0, window.eval)(code);
    let safe = raw;
    if (typeof raw === 'function') {
      safe = {_type: 'function', name: raw.name || 'anonymous', length: raw.length, toString: raw.toString()};
    } else if (raw !== null && typeof raw === 'object' && !Array.isArray(raw)) {
      try {
        JSON.stringify(raw);
      } catch (e) {
        safe = raw.constructor
          ? {_type: 'object', constructor: raw.constructor.name, keys: Object.keys(raw),
             _note: 'Complex object - use specific properties to inspect'}
          : '[Complex Object - Cannot Serialize]';
      }
    }
    return {success: true, result: safe};
  } catch (error) {
    return {success: false, error: String(error && error.message || error), stack: error && error.stack || null};
  }
})(%(code)s)"""


class BrowserPage:
    """One page target of a session's browser, driven directly over CDP."""

    def __init__(self, connection: CdpConnection, target_id: str, url: str = ""):
        self.conn = connection
        self.target_id = target_id
        self.url = url
        self._page_enabled = False
        self._runtime_enabled = False

    def close(self) -> None:
        """Close the page connection (the page itself stays open)."""
        self.conn.close()

    def enable_page(self) -> None:
        if not self._page_enabled:
            self.conn.send("Page.enable")
            self._page_enabled = True

    def enable_runtime(self) -> None:
        if not self._runtime_enabled:
            self.conn.send("Runtime.enable")
            self._runtime_enabled = True

    # ─────────────────────────────────────────────────────────────────────────
    # JavaScript
    # ─────────────────────────────────────────────────────────────────────────

    def eval_js(self, expression: str, *, timeout: float | None = None) -> Any:
        """Evaluate an expression and return its JSON value (None for undefined/null).

        Raises EvaluationError if the expression throws.
        """
        self.enable_runtime()

        old_timeout: float | None = None
        if timeout is not None:
            old_timeout = float(self.conn.timeout)
            self.conn.timeout = float(timeout)
        try:
            result = self.conn.send(
                "Runtime.evaluate",
                {
                    "expression": expression,
                    "returnByValue": True,
                    "awaitPromise": True,
                },
            )
        finally:
            if old_timeout is not None:
                self.conn.timeout = old_timeout

        details = result.get("exceptionDetails")
        if isinstance(details, dict):
            exc = details.get("exception") if isinstance(details.get("exception"), dict) else {}
            message = exc.get("description") or details.get("text") or "JavaScript exception"
            raise EvaluationError(str(message), target=expression)

        if "result" not in result:
            return None
        value = result["result"]
        # CDP returns undefined as {"type":"undefined"} (no "value" field).
        if isinstance(value, dict) and value.get("type") == "undefined":
            return None
        if isinstance(value, dict) and value.get("type") == "object" and value.get("subtype") == "null":
            return None
        return value.get("value", value) if isinstance(value, dict) else value

    def evaluate(self, source: str) -> Any:
        """Run caller-supplied source in the page's global scope.

        The source is passed through opaquely. A thrown exception becomes
        EvaluationError with the page-side message and stack.
        """
        try:
            outcome = self.eval_js(_EVALUATE_JS % {"code": json.dumps(source)})
        except CdpError as exc:
            raise EvaluationError(str(exc), target=source) from exc
        if not isinstance(outcome, dict):
            raise EvaluationError("Unexpected evaluation result", target=source)
        if not outcome.get("success"):
            raise EvaluationError(
                str(outcome.get("error") or "JavaScript exception"), target=source, stack=outcome.get("stack")
            )
        return outcome.get("result")

    def get_url(self) -> str:
        """Get current page URL."""
        return self.eval_js("window.location.href") or ""

    def page_info(self) -> dict[str, Any]:
        info = self.eval_js(_PAGE_INFO_JS)
        if not isinstance(info, dict):
            return {"url": self.url, "title": "", "ready": False}
        self.url = str(info.get("url") or self.url)
        return info

    # ─────────────────────────────────────────────────────────────────────────
    # Navigation
    # ─────────────────────────────────────────────────────────────────────────

    def _wait_ready(self, deadline: float, *, complete: bool) -> bool:
        wanted = {"complete"} if complete else {"interactive", "complete"}
        while time.time() < deadline:
            with suppress(CdpError, EvaluationError):
                if self.eval_js("document.readyState", timeout=max(0.5, min(5.0, deadline - time.time()))) in wanted:
                    return True
            time.sleep(0.1)
        return False

    def navigate(self, url: str, timeout_ms: int = 30000) -> dict[str, Any]:
        """Navigate and wait for the DOM to be parsed; returns {url, title, ready}."""
        deadline = time.time() + max(0.1, timeout_ms / 1000.0)
        try:
            self.enable_page()
            result = self.conn.send("Page.navigate", {"url": url})
        except CdpError as exc:
            raise CapabilityError(f"Failed to navigate to {url}: {exc}", target=url) from exc
        error_text = result.get("errorText")
        if error_text:
            raise CapabilityError(f"Failed to navigate to {url}: {error_text}", target=url)
        if not self._wait_ready(deadline, complete=False):
            raise NavigationTimeoutError(
                f"Failed to navigate to {url}: timed out after {timeout_ms}ms", target=url
            )
        return self.page_info()

    def reload(self, timeout_ms: int = 15000, *, wait_for_load: bool = True) -> dict[str, Any]:
        """Reload the page; waits for the load event, or only for a parsed DOM."""
        deadline = time.time() + max(0.1, timeout_ms / 1000.0)
        try:
            self.enable_page()
            self.conn.clear_events("Page.loadEventFired")
            self.conn.send("Page.reload", {"ignoreCache": False})
        except CdpError as exc:
            raise CapabilityError(f"Failed to refresh page: {exc}", target=self.url) from exc
        if wait_for_load:
            fired = self.conn.wait_for_event("Page.loadEventFired", timeout=max(0.1, deadline - time.time()))
            ok = fired is not None
        else:
            ok = self._wait_ready(deadline, complete=False)
        if not ok:
            raise NavigationTimeoutError(f"Page reload timed out after {timeout_ms}ms", target=self.url)
        return self.page_info()

    # ─────────────────────────────────────────────────────────────────────────
    # DOM inspection
    # ─────────────────────────────────────────────────────────────────────────

    def overview(self) -> dict[str, Any]:
        """Page-level structure: tag counts plus id, class and common selectors."""
        return self.eval_js(_PAGE_OVERVIEW_JS % {"common": json.dumps(COMMON_SELECTORS)}) or {}

    def child_selectors(self, selector: str) -> dict[str, Any]:
        data = self.eval_js(_CHILD_SELECTORS_JS % {"selector": json.dumps(selector)})
        if not isinstance(data, dict) or not data.get("found"):
            raise ElementNotFoundError(f"Element not found: {selector}", target=selector)
        return data

    def inspect(self, selector: str) -> dict[str, Any]:
        """Describe the first element matching `selector`."""
        data = self.eval_js(_ELEMENT_JS % {"selector": json.dumps(selector)})
        if not isinstance(data, dict) or not data.get("found"):
            raise ElementNotFoundError(f"Element not found: {selector}", target=selector)
        return data

    def content(self) -> dict[str, Any]:
        return self.eval_js(_PAGE_CONTENT_JS) or {}

    # ─────────────────────────────────────────────────────────────────────────
    # Capture
    # ─────────────────────────────────────────────────────────────────────────

    def screenshot(self, clip: dict[str, Any] | None = None, capture_beyond_viewport: bool = False) -> str:
        """Capture screenshot, return base64 PNG data."""
        params: dict[str, Any] = {"format": "png", "fromSurface": True}
        if clip:
            params["clip"] = clip
        if capture_beyond_viewport:
            params["captureBeyondViewport"] = True
        result = self.conn.send("Page.captureScreenshot", params)
        return result.get("data", "")

    def capture_full_page(self, path: str | Path) -> str:
        """Write a full-page PNG to `path` and return the resolved path."""
        target = Path(path).expanduser().resolve()
        try:
            metrics = self.conn.send("Page.getLayoutMetrics")
            size = metrics.get("cssContentSize") or metrics.get("contentSize") or {}
            width = max(1, int(float(size.get("width") or 0)))
            height = max(1, int(float(size.get("height") or 0)))
            data = self.screenshot(
                clip={"x": 0, "y": 0, "width": width, "height": height, "scale": 1},
                capture_beyond_viewport=True,
            )
        except CdpError as exc:
            raise CaptureError(f"Screenshot failed: {exc}", target=str(target)) from exc
        if not data:
            raise CaptureError("Screenshot failed: empty image", target=str(target))
        try:
            target.write_bytes(base64.b64decode(data))
        except OSError as exc:
            raise CaptureError(f"Failed to write screenshot {target}: {exc}", target=str(target)) from exc
        return str(target)


__all__ = ["COMMON_SELECTORS", "BrowserPage"]
