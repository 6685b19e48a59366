#!/usr/bin/env python3
"""
Article fetcher and text extractor.

Given a story URL, downloads the page and turns it into plain text suitable
for summarization. Extraction is tried in this order:

1. PDF documents (pypdf, first pages only)
2. GitHub repository roots (README.md from raw.githubusercontent.com)
3. readability article extraction
4. plain tag stripping of the raw HTML

Whether the page may be shown in an iframe is derived from the original
response headers and reported alongside the text.
"""

import asyncio
import io
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, Mapping, Optional, Tuple
from urllib.parse import urlparse

from aiohttp import ClientSession, ClientError, ClientTimeout
from bs4 import BeautifulSoup
from pypdf import PdfReader
from pypdf.errors import PdfReadError
from readability import Document

from config import config, get_logger
from errors import ContentFetchError
from records import ArticleContent
from telemetry import trace_span
from utils import collapse_whitespace

logger = get_logger("fetcher")

GITHUB_RAW_BASE = "https://raw.githubusercontent.com"
GITHUB_README_BRANCHES = ("master", "main")
UNKNOWN_TITLE = "Unknown Title"
CHUNK_SIZE = 64 * 1024


def compute_can_embed(headers: Mapping[str, str]) -> bool:
    """False when X-Frame-Options or a CSP frame-ancestors directive forbids framing."""
    x_frame = (headers.get("X-Frame-Options") or "").strip().upper()
    if x_frame in ("DENY", "SAMEORIGIN"):
        return False
    csp = (headers.get("Content-Security-Policy") or "").lower()
    return "frame-ancestors" not in csp


def _parse_github_repo(url: str) -> Optional[Tuple[str, str]]:
    """Return (owner, repo) when ``url`` is exactly a GitHub repository root.

    https://github.com/owner/repo qualifies; anything with a further path
    (blob, tree, issues, pull, ...) does not.
    """
    if not url:
        return None
    u = urlparse(url)
    if (u.netloc or "").lower() not in ("github.com", "www.github.com"):
        return None
    parts = [p for p in (u.path or "").split("/") if p]
    if len(parts) != 2:
        return None
    owner, repo = parts
    if repo.endswith(".git"):
        repo = repo[:-4]
    return (owner, repo) if owner and repo else None


def _is_pdf(url: str, content_type: str) -> bool:
    return "application/pdf" in (content_type or "").lower() or urlparse(url).path.lower().endswith(".pdf")


def _html_to_text(html: str) -> str:
    """Plain text of an HTML fragment, one line per block, blank lines dropped."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    lines = (collapse_whitespace(line) for line in soup.get_text("\n").splitlines())
    return "\n".join(line for line in lines if line)


def strip_tags(html: str) -> str:
    """Drop all markup and collapse whitespace to single spaces."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    return collapse_whitespace(soup.get_text(" "))


class ArticleFetcher:
    """Fetch story URLs and extract readable text."""

    def __init__(self, session: Optional[ClientSession] = None):
        self.executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="extract")
        self.timeout = ClientTimeout(total=config.HTTP_TIMEOUT)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> ClientSession:
        if self._session is None:
            self._session = ClientSession(timeout=self.timeout, headers={"User-Agent": config.USER_AGENT})
        return self._session

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in the extraction thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None
        self.executor.shutdown(wait=False, cancel_futures=True)

    @trace_span(
        "article.fetch",
        tracer_name="fetcher",
        attr_from_args=lambda self, url: {"article.url": url},
    )
    async def fetch_article(self, url: str) -> ArticleContent:
        """Download ``url`` and return its text, title and embeddability.

        Raises:
            ContentFetchError: on transport errors or a non-200 response.
        """
        session = await self._get_session()
        try:
            async with session.get(url, headers={"User-Agent": config.USER_AGENT},
                                   timeout=self.timeout, allow_redirects=True) as response:
                if response.status != 200:
                    raise ContentFetchError(url, f"HTTP {response.status}")
                can_embed = compute_can_embed(response.headers)
                content_type = response.headers.get("Content-Type", "")
                is_pdf = _is_pdf(url, content_type)
                limit = config.MAX_PDF_BYTES if is_pdf else config.MAX_ARTICLE_BYTES
                body = await self._read_capped(response, limit)
                charset = response.charset or "utf-8"
        except (ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ContentFetchError(url, str(e) or type(e).__name__) from e

        if is_pdf:
            text = await self.run_in_executor(self._extract_pdf_text, body, url)
            if text and len(text) > config.CONTENT_MIN_CHARS:
                return ArticleContent(content=text, title=f"PDF Document: {url}", can_embed=can_embed)
            if body.startswith(b"%PDF"):
                # A real PDF we could not read; its bytes are not worth parsing as HTML
                logger.warning(f"PDF extraction failed or too short for {url}")
                return ArticleContent(content=text or "", title=f"PDF Document: {url}", can_embed=can_embed)
            logger.debug(f"{url} looked like a PDF but is not one, parsing as HTML")

        repo = _parse_github_repo(url)
        if repo:
            readme = await self._fetch_github_readme(*repo)
            if readme:
                owner, name = repo
                return ArticleContent(content=readme, title=f"GitHub README: {owner}/{name}", can_embed=can_embed)

        try:
            html = body.decode(charset, errors="replace")
        except LookupError:
            html = body.decode("utf-8", errors="replace")
        parsed = await self.run_in_executor(self._parse_with_readability, html, url)
        if parsed:
            title, text = parsed
            return ArticleContent(content=text, title=title or UNKNOWN_TITLE, can_embed=can_embed)

        return ArticleContent(content=strip_tags(html), title=UNKNOWN_TITLE, can_embed=can_embed)

    async def _read_capped(self, response, limit: int) -> bytes:
        """Read at most ``limit`` bytes of the response body."""
        buf = bytearray()
        async for chunk in response.content.iter_chunked(CHUNK_SIZE):
            buf.extend(chunk[:limit - len(buf)])
            if len(buf) >= limit:
                logger.debug(f"Response body truncated at {limit} bytes")
                break
        return bytes(buf)

    async def _fetch_github_readme(self, owner: str, repo: str) -> Optional[str]:
        """Fetch README.md from the master branch, then main."""
        session = await self._get_session()
        for branch in GITHUB_README_BRANCHES:
            raw_url = f"{GITHUB_RAW_BASE}/{owner}/{repo}/{branch}/README.md"
            try:
                async with session.get(raw_url, headers={"User-Agent": config.USER_AGENT},
                                       timeout=self.timeout) as resp:
                    if resp.status == 200:
                        text = await resp.text()
                        if text and text.strip():
                            logger.info(f"Fetched README for {owner}/{repo} from {branch}")
                            return text
                    elif resp.status in (403, 429):
                        logger.warning(f"GitHub rate/forbidden for {owner}/{repo}: HTTP {resp.status}")
                        return None
            except (ClientError, asyncio.TimeoutError, UnicodeDecodeError) as e:
                logger.debug(f"Error fetching {raw_url}: {e}")
        return None

    def _extract_pdf_text(self, data: bytes, url: str) -> str:
        """Text of the first PDF_MAX_PAGES pages (runs in executor)."""
        try:
            reader = PdfReader(io.BytesIO(data))
            pages = reader.pages[:config.PDF_MAX_PAGES]
            return "\n".join((page.extract_text() or "") for page in pages).strip()
        except (PdfReadError, ValueError, KeyError, TypeError, OSError) as e:
            logger.warning(f"Error extracting text from PDF {url}: {e}")
            return ""

    def _parse_with_readability(self, html: str, url: str) -> Optional[Tuple[str, str]]:
        """Return (title, text) of the main article, or None (runs in executor)."""
        try:
            article = Document(html)
            text = _html_to_text(article.summary())
            if not text.strip():
                return None
            return article.short_title(), text
        except (ValueError, RuntimeError, TypeError) as e:
            logger.debug(f"Readability failed for {url}: {e}")
            return None
