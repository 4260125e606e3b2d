"""Bundle remotely hosted Next.js pages into self-contained widget documents.

A widget page is fetched from the widget source host, its relative stylesheets
and scripts are inlined, the remaining relative links are made absolute and the
hosting-only bootstrap elements are removed. The result (the *shell*) is cached
per ``(source_path, locale)``. Tool data is injected into a fresh copy of the
shell on every call, so the cache never holds per-call data.

When the page cannot be fetched or parsed, :meth:`WidgetBundler.bundle` returns
a small fallback document that renders the data as formatted JSON instead.

Usage:
    bundler = WidgetBundler("https://refhubs.com")
    html = await bundler.bundle("/widgets/greet", "ko", {"name": "철수"})
"""

from __future__ import annotations

import html
import json
import logging
import os
import re
from typing import Any, Awaitable, Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlsplit

import anyio
import httpx
from bs4 import BeautifulSoup, Tag

logger = logging.getLogger("widget-bundler")

DEFAULT_PAGE_TIMEOUT = float(os.environ.get("WIDGET_PAGE_TIMEOUT", "10"))
DEFAULT_ASSET_TIMEOUT = float(os.environ.get("WIDGET_ASSET_TIMEOUT", "3"))

BUILD_ASSET_PREFIX = "/_next/"
# Chunks that set up the Next.js runtime itself; they stay external.
RUNTIME_BUNDLE_MARKERS = (
    "/_next/static/chunks/webpack",
    "/_next/static/chunks/framework",
)
RESOURCE_HINT_RELS = frozenset({"preload", "prefetch", "modulepreload"})
# Attributes that only make sense on external scripts.
EXTERNAL_SCRIPT_ATTRS = ("src", "async", "defer", "integrity", "crossorigin", "charset")

WIDGET_DATA_GLOBAL = "__WIDGET_DATA__"
WIDGET_DATA_EVENT = "widgetDataReady"
WIDGET_DATA_SCRIPT_ID = "widget-data"

_CLOSING_TAG_RES = {
    "script": re.compile(r"</(script)", re.IGNORECASE),
    "style": re.compile(r"</(style)", re.IGNORECASE),
}
_SCRIPT_JSON_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}

ShellKey = Tuple[str, str]


class UpstreamFetchError(RuntimeError):
    """Raised when a widget page or one of its assets cannot be retrieved."""

    def __init__(self, message: str, *, url: str = "") -> None:
        super().__init__(message)
        self.url = url


class SubResourceInlineError(UpstreamFetchError):
    """Raised when a single stylesheet or script cannot be inlined."""


def is_absolute_url(url: str) -> bool:
    """True for URLs carrying a scheme (http:, data:, mailto:...) or a network path."""
    return url.startswith("//") or bool(urlsplit(url).scheme)


def is_runtime_bundle(url: str) -> bool:
    return any(marker in url for marker in RUNTIME_BUNDLE_MARKERS)


def script_safe_json(data: Any) -> str:
    """Serialize ``data`` as JSON that can be embedded verbatim in a <script> block."""
    text = json.dumps(data, ensure_ascii=False)
    for char, escaped in _SCRIPT_JSON_ESCAPES.items():
        text = text.replace(char, escaped)
    return text


def data_script_source(data: Any) -> str:
    """JavaScript that publishes ``data`` on the page and announces it."""
    payload = script_safe_json(data)
    return (
        "(function(){"
        f"var data={payload};"
        f"window.{WIDGET_DATA_GLOBAL}=data;"
        "if(typeof window.openai!=='undefined'&&window.openai){window.openai.toolOutput=data;}"
        f"window.dispatchEvent(new CustomEvent('{WIDGET_DATA_EVENT}',{{detail:data}}));"
        "})();"
    )


def render_data_script(data: Any) -> str:
    return f'<script id="{WIDGET_DATA_SCRIPT_ID}">{data_script_source(data)}</script>'


def ensure_head(soup: BeautifulSoup) -> Tag:
    """Return the document's <head>, creating one when the page has none."""
    if soup.head is not None:
        return soup.head
    head = soup.new_tag("head")
    if soup.html is not None:
        soup.html.insert(0, head)
    else:
        soup.insert(0, head)
    return head


def inject_data(shell: str, data: Any) -> str:
    """Append the data script as the last child of the shell's ``<head>``.

    The shell is re-parsed so that markup-like text inside inlined code is
    never mistaken for the head's closing tag.
    """
    soup = BeautifulSoup(shell, "html.parser")
    script = soup.new_tag("script", id=WIDGET_DATA_SCRIPT_ID)
    script.string = data_script_source(data)
    ensure_head(soup).append(script)
    return str(soup)


def _escape_inline(text: str, tag_name: str) -> str:
    return _CLOSING_TAG_RES[tag_name].sub(r"<\\/\1", text)


_FALLBACK_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Widget Data</title>
<style>
  body {{
    margin: 0;
    padding: 20px;
    font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
    background: linear-gradient(135deg, #667eea 0%, #764ba2 100%);
    min-height: 100vh;
    display: flex;
    align-items: center;
    justify-content: center;
  }}
  .container {{
    background: white;
    border-radius: 16px;
    padding: 32px;
    box-shadow: 0 20px 60px rgba(0, 0, 0, 0.3);
    max-width: 500px;
  }}
  h2 {{ margin: 0 0 16px; color: #333; }}
  pre {{
    background: #f5f5f5;
    padding: 16px;
    border-radius: 8px;
    overflow: auto;
    font-size: 14px;
  }}
  .reason {{ margin: 12px 0 0; color: #888; font-size: 12px; }}
</style>
{data_script}
</head>
<body>
<div class="container">
  <h2>📦 Widget Data</h2>
  <pre id="data">{pretty}</pre>
  <p class="reason">{reason}</p>
</div>
</body>
</html>
"""


def fallback_document(data: Optional[Any], reason: str = "") -> str:
    """Render a minimal styled page showing ``data`` as formatted JSON.

    The page carries the same data script as a bundled widget, so host bridges
    still receive the payload.
    """
    payload = data if data is not None else {}
    pretty = json.dumps(payload, indent=2, ensure_ascii=False)
    return _FALLBACK_TEMPLATE.format(
        data_script=render_data_script(payload),
        pretty=html.escape(pretty, quote=False),
        reason=html.escape(reason or "Widget source unavailable", quote=False),
    )


class WidgetBundler:
    """Fetch, inline and cache widget pages from one source host."""

    def __init__(
        self,
        source_base_url: str,
        *,
        cache_enabled: bool = True,
        page_timeout: float = DEFAULT_PAGE_TIMEOUT,
        asset_timeout: float = DEFAULT_ASSET_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.source_base_url = source_base_url.rstrip("/")
        self.cache_enabled = cache_enabled
        self.page_timeout = page_timeout
        self.asset_timeout = asset_timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(follow_redirects=True)
        self._shells: Dict[ShellKey, str] = {}

    def page_url(self, source_path: str, locale: str) -> str:
        if not source_path.startswith("/"):
            source_path = f"/{source_path}"
        return f"{self.source_base_url}/{locale}{source_path}"

    def resolve(self, reference: str) -> str:
        return urljoin(f"{self.source_base_url}/", reference)

    def cached_keys(self) -> List[ShellKey]:
        return list(self._shells)

    def clear_cache(self) -> None:
        self._shells.clear()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def bundle(self, source_path: str, locale: str, data: Optional[Any] = None) -> str:
        """Return the widget document for ``source_path`` in ``locale``.

        ``data`` is injected into the document head when given. Never raises
        for upstream problems; those produce :func:`fallback_document`.
        """
        key = (source_path, locale)
        shell = self._shells.get(key) if self.cache_enabled else None
        if shell is None:
            try:
                shell = await self.build_shell(source_path, locale)
            except UpstreamFetchError as exc:
                logger.warning("Widget %s (%s) unavailable, using fallback: %s", source_path, locale, exc)
                return fallback_document(data, str(exc))
            if self.cache_enabled:
                self._shells[key] = shell
                logger.info("Cached widget shell %s (%s), %d bytes", source_path, locale, len(shell))
        else:
            logger.debug("Widget shell cache hit: %s (%s)", source_path, locale)

        if data is None:
            return shell
        return inject_data(shell, data)

    async def build_shell(self, source_path: str, locale: str) -> str:
        """Fetch and inline one page, without data. Raises UpstreamFetchError."""
        url = self.page_url(source_path, locale)
        logger.info("Bundling widget from %s", url)
        body = await self._fetch_page(url, locale)

        soup = BeautifulSoup(body, "html.parser")
        if soup.find(True) is None:
            raise UpstreamFetchError(f"No markup in response from {url}", url=url)

        await self._run_pass("stylesheets", self._inline_stylesheets(soup))
        await self._run_pass("scripts", self._inline_scripts(soup))
        await self._run_pass("links", self._absolutize_links(soup))
        await self._run_pass("strip", self._strip_bootstrap(soup))
        ensure_head(soup)
        return str(soup)

    async def _run_pass(self, name: str, transformation: Awaitable[None]) -> None:
        try:
            await transformation
        except Exception:
            logger.warning("Widget %s pass failed, continuing", name, exc_info=True)

    async def _fetch_text(self, url: str, timeout: float, headers: Optional[Dict[str, str]] = None) -> str:
        with anyio.fail_after(timeout):
            response = await self._client.get(url, headers=headers, timeout=httpx.Timeout(timeout))
        response.raise_for_status()
        return response.text

    async def _fetch_page(self, url: str, locale: str) -> str:
        headers = {"Accept": "text/html", "Accept-Language": locale}
        try:
            body = await self._fetch_text(url, self.page_timeout, headers)
        except (TimeoutError, httpx.TimeoutException) as exc:
            raise UpstreamFetchError(f"Timed out after {self.page_timeout}s fetching {url}", url=url) from exc
        except httpx.HTTPStatusError as exc:
            raise UpstreamFetchError(f"HTTP {exc.response.status_code} fetching {url}", url=url) from exc
        except httpx.HTTPError as exc:
            raise UpstreamFetchError(f"Network error fetching {url}: {exc}", url=url) from exc
        if not body.strip():
            raise UpstreamFetchError(f"Empty response from {url}", url=url)
        return body

    async def _fetch_asset(self, reference: str) -> str:
        url = self.resolve(reference)
        try:
            return await self._fetch_text(url, self.asset_timeout)
        except (TimeoutError, httpx.TimeoutException) as exc:
            raise SubResourceInlineError(f"Timed out after {self.asset_timeout}s inlining {url}", url=url) from exc
        except httpx.HTTPStatusError as exc:
            raise SubResourceInlineError(f"HTTP {exc.response.status_code} inlining {url}", url=url) from exc
        except httpx.HTTPError as exc:
            raise SubResourceInlineError(f"Failed to inline {url}: {exc}", url=url) from exc

    async def _fetch_assets(self, references: List[str]) -> List[Optional[str]]:
        """Fetch all references concurrently; failed ones come back as None."""
        results: List[Optional[str]] = [None] * len(references)

        async def fetch_one(index: int, reference: str) -> None:
            try:
                results[index] = await self._fetch_asset(reference)
            except SubResourceInlineError as exc:
                logger.warning("%s", exc)

        async with anyio.create_task_group() as tg:
            for index, reference in enumerate(references):
                tg.start_soon(fetch_one, index, reference)
        return results

    async def _inline_stylesheets(self, soup: BeautifulSoup) -> None:
        links = [
            link
            for link in soup.find_all("link", rel="stylesheet")
            if link.get("href") and not is_absolute_url(link["href"])
        ]
        bodies = await self._fetch_assets([link["href"] for link in links])
        for link, css in zip(links, bodies):
            if css is None:
                continue
            style = soup.new_tag("style")
            if link.get("media"):
                style["media"] = link["media"]
            style.string = _escape_inline(css, "style")
            link.replace_with(style)

    async def _inline_scripts(self, soup: BeautifulSoup) -> None:
        pending: List[Tag] = []
        for script in soup.find_all("script", src=True):
            src = script["src"]
            if is_absolute_url(src):
                continue
            if is_runtime_bundle(src):
                script["src"] = self.resolve(src)
                continue
            pending.append(script)

        bodies = await self._fetch_assets([script["src"] for script in pending])
        for script, code in zip(pending, bodies):
            if code is None:
                continue
            for attr in EXTERNAL_SCRIPT_ATTRS:
                if attr in script.attrs:
                    del script[attr]
            script.string = _escape_inline(code, "script")

    async def _absolutize_links(self, soup: BeautifulSoup) -> None:
        for tag_name, attr in (("img", "src"), ("a", "href"), ("link", "href"), ("script", "src")):
            for element in soup.find_all(tag_name, attrs={attr: True}):
                value = element[attr].strip()
                if not value or value.startswith("#") or is_absolute_url(value):
                    continue
                element[attr] = self.resolve(value)

    async def _strip_bootstrap(self, soup: BeautifulSoup) -> None:
        for base in soup.find_all("base"):
            base.decompose()
        for link in soup.find_all("link", href=True):
            rels = set(link.get("rel") or ())
            if rels & RESOURCE_HINT_RELS and BUILD_ASSET_PREFIX in link["href"]:
                link.decompose()
        # Build chunks still external here failed to inline.
        build_prefix = self.resolve(BUILD_ASSET_PREFIX)
        for script in soup.find_all("script", src=True):
            src = script["src"]
            if src.startswith(build_prefix) and not is_runtime_bundle(src):
                logger.debug("Dropping external build chunk %s", src)
                script.decompose()
