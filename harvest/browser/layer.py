"""Browser Layer — Playwright-based page fetcher.

The Browser Layer has no decision-making authority. It loads a URL and returns a
text-level PageExtract (plain text, headings, links, images, markdown, meta). It does
not click, scroll or solve anything on the page.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

import html2text
from playwright.async_api import Browser, BrowserContext, async_playwright

from harvest.config.settings import BrowserConfig
from harvest.pipeline.extraction import PageExtract

# Evaluated in the page: text-level view of the rendered document.
_EXTRACT_SCRIPT = """() => {
    const clone = document.body ? document.body.cloneNode(true) : null;
    if (clone) {
        clone.querySelectorAll('script, style, noscript').forEach(el => el.remove());
    }
    const meta = name => {
        const el = document.querySelector(`meta[name="${name}"], meta[property="og:${name}"]`);
        return el ? el.getAttribute('content') : null;
    };
    return {
        text: document.body ? document.body.innerText : '',
        headings: Array.from(document.querySelectorAll('h1, h2, h3'))
            .map(el => el.innerText.trim())
            .filter(Boolean),
        links: Array.from(document.querySelectorAll('a[href]'))
            .map(el => el.href)
            .filter(href => href.startsWith('http')),
        images: Array.from(document.querySelectorAll('img[src]'))
            .map(el => el.src)
            .filter(Boolean),
        title: document.title || null,
        description: meta('description'),
        html: clone ? clone.outerHTML : '',
    };
}"""


class FetchError(Exception):
    """Raised when a page cannot be fetched (network, timeout, non-success status)."""


class PageFetcher(Protocol):
    """Page fetch capability used by the Conduit and pagination expansion."""

    async def fetch(self, url: str) -> PageExtract:
        ...


def html_to_markdown(html: str, url: str = "") -> str:
    converter = html2text.HTML2Text()
    converter.ignore_links = False
    converter.ignore_images = True
    converter.body_width = 0
    converter.unicode_snob = True
    if url:
        converter.baseurl = url
    return converter.handle(html)


def build_page_extract(url: str, snapshot: dict[str, Any]) -> PageExtract:
    """Turn the in-page evaluation result into a PageExtract."""
    return PageExtract(
        url=url,
        text=snapshot.get("text") or "",
        headings=list(snapshot.get("headings") or []),
        links=list(dict.fromkeys(snapshot.get("links") or [])),
        images=list(dict.fromkeys(snapshot.get("images") or [])),
        markdown=html_to_markdown(snapshot.get("html") or "", url),
        title_meta=snapshot.get("title") or None,
        description_meta=snapshot.get("description") or None,
    )


class BrowserLayer:
    """Playwright-based page fetcher.

    Contract:
    - One shared browser context; each fetch gets its own page, closed afterwards,
      so concurrent fetches within a batch do not interfere
    - Every fetch is bounded by ``timeout_s``
    - Any failure surfaces as FetchError
    """

    def __init__(self, config: BrowserConfig | None = None, timeout_s: float = 30) -> None:
        self._config = config or BrowserConfig()
        self._timeout_s = timeout_s
        self._playwright: Any = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None

    async def start(self) -> None:
        """Launch browser and create an isolated context."""
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self._config.headless,
        )
        self._context = await self._browser.new_context(
            viewport={
                "width": self._config.viewport_width,
                "height": self._config.viewport_height,
            },
            user_agent=self._config.user_agent,
            locale=self._config.locale,
        )

    async def stop(self) -> None:
        """Clean up browser resources."""
        if self._context:
            await self._context.close()
            self._context = None
        if self._browser:
            await self._browser.close()
            self._browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None

    async def __aenter__(self) -> BrowserLayer:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def fetch(self, url: str) -> PageExtract:
        """Load ``url`` and return its text-level extract."""
        if not self._context:
            raise FetchError("Browser not started")
        try:
            return await asyncio.wait_for(self._fetch(url), timeout=self._timeout_s)
        except asyncio.TimeoutError as exc:
            raise FetchError(f"Timed out fetching {url} after {self._timeout_s}s") from exc
        except FetchError:
            raise
        except Exception as exc:
            raise FetchError(f"Failed to fetch {url}: {exc}") from exc

    async def _fetch(self, url: str) -> PageExtract:
        page = await self._context.new_page()
        try:
            response = await page.goto(
                url, wait_until="domcontentloaded", timeout=self._timeout_s * 1000
            )
            if response is not None and not response.ok:
                raise FetchError(f"HTTP {response.status} for {url}")
            snapshot = await page.evaluate(_EXTRACT_SCRIPT)
            return build_page_extract(url, snapshot)
        finally:
            await page.close()
