#!/usr/bin/env python3
import argparse
import hashlib
import json
import logging
import os
import posixpath
import re
import sys
import time
import tomllib
from collections import deque
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Callable, Deque, Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union
from urllib.parse import unquote, urldefrag, urljoin, urlparse, urlunparse

import requests
import yaml
from bs4 import BeautifulSoup
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from replay_runtime import inject_runtime_into_file

# -------------------- Config --------------------

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
}

CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
CSS_IMPORT_RE = re.compile(
    r"@import\s+(?:url\()?\s*([\"']?)([^\)\"';]+)\1\s*\)?\s*;",
    re.IGNORECASE,
)
SRCSET_SPLIT_RE = re.compile(r"\s*,\s*")
WS_RE = re.compile(r"\s+")
INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"/\\|?*]')
PAGE_NAME_CHARS_RE = re.compile(r"[^a-zA-Z0-9-]")
QUERY_OR_FRAGMENT_RE = re.compile(r"[?#]")
MALFORMED_ESCAPE_RE = re.compile(r"%(?![0-9A-Fa-f]{2})")
STATIC_LINK_RE = re.compile(r"\.(png|jpg|jpeg|gif|css|js|pdf|zip|mp4)$", re.IGNORECASE)

UNRESOLVABLE_PREFIXES = ("javascript:", "mailto:", "data:")
DEFAULT_PORTS = {"http": 80, "https": 443}

# Dynamic-image gateways are parameterized per asset; stripping their query
# would collapse distinct images onto one entry.
DYNAMIC_IMAGE_MARKERS = ("/_next/image", "?url=")

URL_MAP_FILE = "urlMap.json"
METADATA_FILE = "metadata.json"

KIND_STYLESHEET = "stylesheet"
KIND_SCRIPT = "script"
KIND_MEDIA = "media"
KIND_API = "api"
KIND_OTHER = "other"

KIND_DIRS = {
    KIND_STYLESHEET: "css",
    KIND_SCRIPT: "js",
    KIND_MEDIA: "media",
    KIND_API: "api",
}

TIER_EXACT = 1
TIER_DECODED = 2
TIER_QUERY_STRIPPED = 3
TIER_PATH_SUFFIX = 4

CAPTURE_TIERS = (TIER_EXACT, TIER_DECODED, TIER_QUERY_STRIPPED)
RUNTIME_TIERS = (TIER_EXACT, TIER_DECODED, TIER_PATH_SUFFIX)
SERVER_TIERS = (TIER_EXACT, TIER_PATH_SUFFIX)

CLICK_INTERACTIVE_JS = """
async (delayMs) => {
  document.addEventListener('click', (e) => {
    const target = e.target.closest('a, form');
    if (target) e.preventDefault();
  }, { capture: true });
  const clickables = document.querySelectorAll('button, [role="tab"], [role="button"]');
  for (const el of clickables) {
    try {
      const rect = el.getBoundingClientRect();
      if (rect.width > 0 && rect.height > 0) {
        el.click();
        await new Promise((r) => setTimeout(r, delayMs));
      }
    } catch (err) {}
  }
}
"""

# -------------------- Settings --------------------


@dataclass
class Settings:
    archives_dir: str = "archives"
    max_depth: int = 1

    # Rendering
    render_js: bool = True
    navigation_timeout_ms: int = 60000
    wait_until: str = "networkidle"
    settle_ms: int = 2000
    click_interactive: bool = True
    click_delay_ms: int = 300
    headless: bool = True
    user_agent: str = DEFAULT_HEADERS["User-Agent"]

    # Plain HTTP provider
    timeout: float = 15.0
    workers: int = 8

    # Scheduling
    schedule_minutes: int = 0


# -------------------- Errors --------------------


class ArchiveError(Exception):
    pass


class UnresolvableReference(ArchiveError):
    pass


class CaptureTimeout(ArchiveError):
    pass


class PageFetchError(ArchiveError):
    pass


class PageProviderError(ArchiveError):
    pass


# -------------------- Utils --------------------


def sanitize_filename(name: str) -> str:
    name = INVALID_FILENAME_CHARS_RE.sub("_", name)
    name = name or "file"
    if name.startswith("."):
        name = "_" + name[1:]
    return name[:200]


def short_h(value: str, length: int = 8) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()[:length]


def domain_clean(host: str) -> str:
    return re.sub(r"[^a-z0-9]", "_", host, flags=re.IGNORECASE)


def atomic_write_json(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
    os.replace(tmp, path)


# -------------------- Canonicalizer --------------------


def canonicalize(reference: str, base_url: str) -> str:
    """Resolve a markup or request reference into its canonical absolute URL.

    Entity-escaped ampersands are unescaped before resolution and the fragment
    is dropped. Percent-escapes are left untouched so keys stay stable.
    Raises UnresolvableReference for empty input, javascript:/mailto:/data:
    references, and anything that does not resolve to an http(s) URL.
    """
    ref = (reference or "").strip()
    if not ref or ref.lower().startswith(UNRESOLVABLE_PREFIXES):
        raise UnresolvableReference(reference)
    ref = ref.replace("&amp;", "&")
    try:
        p = urlparse(urljoin(base_url or "", ref))
        host = p.hostname
        port = p.port
    except ValueError as e:
        raise UnresolvableReference(reference) from e
    scheme = p.scheme.lower()
    if scheme not in DEFAULT_PORTS or not host:
        raise UnresolvableReference(reference)
    netloc = f"[{host}]" if ":" in host else host
    if port is not None and port != DEFAULT_PORTS[scheme]:
        netloc = f"{netloc}:{port}"
    return urlunparse((scheme, netloc, p.path or "/", p.params, p.query, ""))


def strip_query(url: str) -> str:
    return QUERY_OR_FRAGMENT_RE.split(url, 1)[0]


def is_dynamic_image(url: str) -> bool:
    return any(marker in url for marker in DYNAMIC_IMAGE_MARKERS)


# -------------------- Resolution index --------------------


class ResolutionIndex(Mapping):
    """Canonical URL -> archive-relative local path, in insertion order."""

    def __init__(self, init: Optional[Mapping] = None, *, read_only: bool = False):
        self._m: Dict[str, str] = dict(init or {})
        self._lock = Lock()
        self.read_only = read_only

    def __getitem__(self, url: str) -> str:
        return self._m[url]

    def __iter__(self) -> Iterator[str]:
        return iter(self._m)

    def __len__(self) -> int:
        return len(self._m)

    def add(self, url: str, local_path: str) -> bool:
        if self.read_only:
            raise ArchiveError("resolution index is read-only")
        with self._lock:
            if url in self._m:
                return False
            self._m[url] = local_path.replace("\\", "/")
            return True

    def as_dict(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._m)

    def save(self, path: Path) -> None:
        atomic_write_json(path, self.as_dict())
        self.read_only = True

    @classmethod
    def load(cls, path: Path) -> "ResolutionIndex":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ArchiveError(f"malformed index file: {path}")
        return cls(data, read_only=True)


# -------------------- Tiered matcher --------------------


def _match_exact(canonical: str, index: Mapping) -> Optional[str]:
    return index.get(canonical)


def safe_unquote(url: str) -> str:
    """Percent-decode ``url``; malformed or non-UTF-8 escapes leave it as is."""
    if MALFORMED_ESCAPE_RE.search(url):
        return url
    try:
        return unquote(url, errors="strict")
    except UnicodeDecodeError:
        return url


def _match_decoded(canonical: str, index: Mapping) -> Optional[str]:
    wanted = safe_unquote(canonical)
    for key, local in index.items():
        if safe_unquote(key) == wanted:
            return local
    return None


def _match_query_stripped(canonical: str, index: Mapping) -> Optional[str]:
    if is_dynamic_image(canonical):
        return None
    wanted = strip_query(canonical)
    for key, local in index.items():
        if strip_query(key) == wanted:
            return local
    return None


def path_suffix_candidate(reference: str) -> Optional[str]:
    ref = strip_query(reference.strip())
    p = urlparse(ref)
    if p.scheme and p.netloc:
        ref = p.path
    if not ref.startswith("/"):
        ref = "/" + ref
    if ref == "/":
        return None
    return ref


def _match_path_suffix(reference: str, canonical: Optional[str], index: Mapping) -> Optional[str]:
    if is_dynamic_image(reference) or (canonical and is_dynamic_image(canonical)):
        return None
    suffix = path_suffix_candidate(reference)
    if suffix is None:
        return None
    for key, local in index.items():
        if strip_query(key).endswith(suffix):
            return local
    return None


def resolve(
    reference: str,
    index: Mapping,
    page_url: str,
    tiers: Iterable[int] = CAPTURE_TIERS,
) -> Optional[str]:
    """Resolve ``reference`` against ``index``; first matching tier wins.

    Returns None when no enabled tier matches; callers keep the original
    reference in that case.
    """
    if not reference or reference.strip().startswith("#"):
        return None
    try:
        canonical: Optional[str] = canonicalize(reference, page_url)
    except UnresolvableReference:
        canonical = None
        if reference.strip().lower().startswith(UNRESOLVABLE_PREFIXES):
            return None
    for tier in sorted(set(tiers)):
        if tier == TIER_PATH_SUFFIX:
            hit = _match_path_suffix(reference, canonical, index)
        elif canonical is None:
            continue
        elif tier == TIER_EXACT:
            hit = _match_exact(canonical, index)
        elif tier == TIER_DECODED:
            hit = _match_decoded(canonical, index)
        elif tier == TIER_QUERY_STRIPPED:
            hit = _match_query_stripped(canonical, index)
        else:
            raise ValueError(f"unknown matcher tier: {tier}")
        if hit is not None:
            return hit
    return None


# -------------------- Response classification --------------------


@dataclass
class ResponseEvent:
    url: str
    status: int
    content_type: str
    resource_type: str
    method: str
    read_body: Callable[[], bytes]


def classify_response(resource_type: Optional[str], content_type: Optional[str]) -> str:
    rt = (resource_type or "").lower()
    ct = (content_type or "").lower()
    if rt == "stylesheet" or "text/css" in ct:
        return KIND_STYLESHEET
    if rt == "script" or "javascript" in ct:
        return KIND_SCRIPT
    if rt in ("image", "media", "font") or "image/" in ct or "font/" in ct:
        return KIND_MEDIA
    if rt in ("xhr", "fetch") or "application/json" in ct:
        return KIND_API
    return KIND_OTHER


# -------------------- Content store --------------------


def local_asset_name(canonical_url: str, kind: str) -> str:
    filename = posixpath.basename(urlparse(canonical_url).path)
    if not filename or kind == KIND_API:
        filename = "data"
    ext = ".json" if kind == KIND_API else posixpath.splitext(filename)[1]
    base = filename[: -len(ext)] if ext and filename.endswith(ext) else filename
    return f"{sanitize_filename(base)}_{short_h(canonical_url)}{ext or '.bin'}"


class ContentStore:
    def __init__(self, root: Path, index: ResolutionIndex):
        self.root = Path(root)
        self.index = index
        self._lock = Lock()

    def store(self, canonical_url: str, body: bytes, kind: str) -> Optional[str]:
        sub = KIND_DIRS.get(kind)
        if sub is None:
            return None
        with self._lock:
            existing = self.index.get(canonical_url)
            if existing is not None:
                logging.debug("duplicate asset ignored: %s", canonical_url)
                return existing
            rel = f"assets/{sub}/{local_asset_name(canonical_url, kind)}"
            dest = self.root / rel
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(body)
            self.index.add(canonical_url, rel)
        logging.debug("stored %s -> %s", canonical_url, rel)
        return rel

    def record_response(self, event: ResponseEvent) -> Optional[str]:
        if (
            event.status >= 300
            or event.url.startswith("data:")
            or event.method.upper() == "OPTIONS"
        ):
            return None
        kind = classify_response(event.resource_type, event.content_type)
        if kind not in KIND_DIRS:
            return None
        try:
            url = canonicalize(event.url, event.url)
        except UnresolvableReference:
            return None
        if url in self.index:
            logging.debug("duplicate asset ignored: %s", url)
            return self.index[url]
        try:
            body = event.read_body()
        except PageFetchError as e:
            logging.debug("unreadable response body %s: %s", event.url, e)
            return None
        return self.store(url, body, kind)


# -------------------- HTML utils --------------------


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except Exception:
        return BeautifulSoup(html, "html.parser")


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag and tag.get("href"):
        return urljoin(fallback, tag["href"])
    return fallback


def serialize_html(soup: BeautifulSoup) -> str:
    try:
        return soup.decode(formatter="html")
    except Exception:
        return str(soup)


def parse_srcset(v: str) -> List[str]:
    urls: List[str] = []
    if not v:
        return urls
    for cand in SRCSET_SPLIT_RE.split(v.strip()):
        if not cand:
            continue
        parts = WS_RE.split(cand.strip())
        if parts:
            urls.append(parts[0])
    return urls


def parse_css_urls(text: str) -> Set[str]:
    urls: Set[str] = set()
    for m in CSS_URL_RE.finditer(text):
        u = m.group(2).strip()
        if u and not u.lower().startswith(UNRESOLVABLE_PREFIXES):
            urls.add(u)
    for m in CSS_IMPORT_RE.finditer(text):
        u = m.group(2).strip()
        if u and not u.lower().startswith(UNRESOLVABLE_PREFIXES):
            urls.add(u)
    return urls


# -------------------- Page naming --------------------


def local_page_name(page_url: str, base_domain: str) -> Optional[str]:
    """Archive-root file name for a same-domain page, None for other hosts."""
    try:
        p = urlparse(page_url)
        host = p.hostname
    except ValueError:
        return None
    if host != base_domain.lower():
        return None
    if p.path in ("", "/"):
        return "index.html"
    name = PAGE_NAME_CHARS_RE.sub("_", p.path.strip("/"))
    if not name:
        return "index.html"
    if not name.endswith(".html"):
        name += ".html"
    if p.query:
        name = f"{name[:-5]}_{short_h('?' + p.query, 4)}.html"
    return name


# -------------------- Static rewriter --------------------

RESOURCE_TAGS = ["img", "script", "audio", "video", "iframe", "source"]
STRIPPED_ON_REWRITE = ("integrity", "crossorigin", "referrerpolicy")


def _rel_to(local: str, rel_dir: str) -> str:
    if not rel_dir:
        return local
    return posixpath.relpath(local, rel_dir)


def rewrite_css_text(css_text: str, base_url: str, index: Mapping, rel_dir: str = "") -> str:
    def map_url(u: str) -> str:
        local = resolve(u, index, base_url, CAPTURE_TIERS)
        return u if local is None else _rel_to(local, rel_dir)

    def repl_url(m: re.Match) -> str:
        q = m.group(1) or ""
        u = m.group(2).strip()
        nu = map_url(u)
        if nu == u:
            return m.group(0)
        return f"url({q}{nu}{q})"

    def repl_import(m: re.Match) -> str:
        q = m.group(1) or ""
        u = m.group(2).strip()
        nu = map_url(u)
        if nu == u:
            return m.group(0)
        return f"@import url({q}{nu}{q});"

    t = CSS_URL_RE.sub(repl_url, css_text)
    t = CSS_IMPORT_RE.sub(repl_import, t)
    return t


def rewrite_srcset(srcset_val: str, base_url: str, index: Mapping) -> str:
    parts = []
    for candidate in SRCSET_SPLIT_RE.split(srcset_val.strip()):
        if not candidate:
            continue
        comp = WS_RE.split(candidate.strip())
        url_part = comp[0]
        desc = " ".join(comp[1:])
        local = resolve(url_part, index, base_url, CAPTURE_TIERS)
        parts.append((local or url_part, desc))
    return ", ".join(f"{u} {d}".strip() for u, d in parts if u)


def rewrite_resource_attrs(soup: BeautifulSoup, base_url: str, index: Mapping) -> int:
    changed = 0
    attr_targets = [(name, "src") for name in RESOURCE_TAGS] + [("link", "href")]
    for tag_name, attr in attr_targets:
        for tag in soup.find_all(tag_name):
            val = tag.get(attr)
            if not val:
                continue
            local = resolve(val, index, base_url, CAPTURE_TIERS)
            if local is None:
                continue
            tag[attr] = local
            for rm in STRIPPED_ON_REWRITE:
                if rm in tag.attrs:
                    del tag.attrs[rm]
            changed += 1
    for tag in soup.find_all(RESOURCE_TAGS, srcset=True):
        old = tag["srcset"]
        new = rewrite_srcset(old, base_url, index)
        if new != old:
            tag["srcset"] = new
            changed += 1
    return changed


def rewrite_inline_css(soup: BeautifulSoup, base_url: str, index: Mapping) -> None:
    for tag in soup.select("[style]"):
        css = tag.get("style")
        if not css:
            continue
        new_css = rewrite_css_text(css, base_url, index)
        if new_css != css:
            tag["style"] = new_css
    for style in soup.find_all("style"):
        if style.string:
            new_text = rewrite_css_text(style.string, base_url, index)
            if new_text != style.string:
                style.string.replace_with(new_text)


def rewrite_page_links(soup: BeautifulSoup, base_url: str, base_domain: str) -> None:
    for a in soup.select("a[href]"):
        href = a.get("href", "").strip()
        if not href or href.lower().startswith(("#", "javascript:", "mailto:")):
            continue
        try:
            absu, frag = urldefrag(urljoin(base_url, href))
        except ValueError:
            continue
        name = local_page_name(absu, base_domain)
        if name is not None:
            a["href"] = f"{name}#{frag}" if frag else name


def rewrite_page(html: str, page_url: str, index: Mapping, base_domain: str) -> str:
    soup = bs4_parse(html)
    base = effective_base_url(soup, page_url)
    rewrite_resource_attrs(soup, base, index)
    rewrite_inline_css(soup, base, index)
    rewrite_page_links(soup, base, base_domain)
    return serialize_html(soup)


def rewrite_stylesheet_files(root: Path, index: Mapping) -> int:
    rewritten = 0
    for css_url, local in list(index.items()):
        if not local.endswith(".css"):
            continue
        css_path = Path(root) / local
        try:
            # Undecodable bytes round-trip through surrogates.
            text = css_path.read_bytes().decode("utf-8", errors="surrogateescape")
        except OSError as e:
            logging.warning("cannot read stylesheet %s: %s", css_path, e)
            continue
        new_text = rewrite_css_text(text, css_url, index, posixpath.dirname(local))
        if new_text != text:
            css_path.write_bytes(new_text.encode("utf-8", errors="surrogateescape"))
            rewritten += 1
    return rewritten


# -------------------- Page-fetch providers --------------------


@dataclass
class CapturedPage:
    url: str
    html: str
    title: str = ""
    links: List[str] = field(default_factory=list)


class PageProvider:
    def open(self) -> None:
        pass

    def fetch(self, url: str, sink: Callable[[ResponseEvent], None]) -> CapturedPage:
        raise NotImplementedError

    def close(self) -> None:
        pass


def build_session(headers: Optional[Dict[str, str]] = None) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=5,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=32, pool_maxsize=32)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS if headers is None else headers)
    return s


PRELOAD_RESOURCE_TYPES = {
    "style": "stylesheet",
    "script": "script",
    "image": "image",
    "font": "font",
    "fetch": "fetch",
}


def extract_asset_refs(soup: BeautifulSoup, base_url: str) -> List[Tuple[str, str]]:
    base = effective_base_url(soup, base_url)
    found: Dict[str, str] = {}

    def add(ref: Optional[str], resource_type: str) -> None:
        if not ref or ref.strip().lower().startswith(UNRESOLVABLE_PREFIXES + ("#",)):
            return
        try:
            found.setdefault(canonicalize(ref, base), resource_type)
        except UnresolvableReference:
            pass

    for link in soup.select("link[href]"):
        rels = {r.lower() for r in (link.get("rel") or [])}
        if "stylesheet" in rels:
            add(link.get("href"), "stylesheet")
        elif "preload" in rels:
            add(link.get("href"), PRELOAD_RESOURCE_TYPES.get((link.get("as") or "").lower(), "other"))
        elif rels & {"icon", "apple-touch-icon"}:
            add(link.get("href"), "image")
    for tag in soup.select("script[src]"):
        add(tag.get("src"), "script")
    for tag in soup.select("img[src], source[src], video[src], audio[src], track[src]"):
        add(tag.get("src"), "image" if tag.name == "img" else "media")
    for tag in soup.select("video[poster]"):
        add(tag.get("poster"), "image")
    for tag in soup.select("img[srcset], source[srcset]"):
        for u in parse_srcset(tag.get("srcset", "")):
            add(u, "image")
    for tag in soup.select("[style]"):
        for u in parse_css_urls(tag.get("style") or ""):
            add(u, "image")
    for style in soup.find_all("style"):
        for u in parse_css_urls(style.string or ""):
            add(u, "image")
    return list(found.items())


def extract_anchor_links(soup: BeautifulSoup, base_url: str) -> List[str]:
    base = effective_base_url(soup, base_url)
    urls: List[str] = []
    for a in soup.select("a[href]"):
        href = (a.get("href") or "").strip()
        if not href or href.lower().startswith(("#", "javascript:", "mailto:", "tel:")):
            continue
        urls.append(urljoin(base, href))
    return urls


class RequestsProvider(PageProvider):
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session

    def open(self) -> None:
        if self.session is None:
            headers = dict(DEFAULT_HEADERS)
            headers["User-Agent"] = self.settings.user_agent
            self.session = build_session(headers)

    def _get(self, url: str) -> requests.Response:
        try:
            return self.session.get(url, timeout=self.settings.timeout)
        except requests.Timeout as e:
            raise CaptureTimeout(f"{url}: {e}") from e
        except requests.RequestException as e:
            raise PageFetchError(f"{url}: {e}") from e

    def _event(self, url: str, resource_type: str) -> Optional[ResponseEvent]:
        try:
            r = self._get(url)
        except ArchiveError as e:
            logging.warning("error downloading %s: %s", url, e)
            return None
        return ResponseEvent(
            url=r.url or url,
            status=r.status_code,
            content_type=r.headers.get("Content-Type", ""),
            resource_type=resource_type,
            method="GET",
            read_body=lambda: r.content,
        )

    def _download_all(self, refs: List[Tuple[str, str]]) -> List[ResponseEvent]:
        if not refs:
            return []
        with ThreadPoolExecutor(max_workers=max(1, self.settings.workers)) as pool:
            results = pool.map(lambda ref: self._event(*ref), refs)
            return [ev for ev in results if ev is not None]

    def fetch(self, url: str, sink: Callable[[ResponseEvent], None]) -> CapturedPage:
        r = self._get(url)
        if r.status_code >= 400:
            raise PageFetchError(f"{url}: HTTP {r.status_code}")
        ct = (r.headers.get("Content-Type") or "").lower()
        if "text/html" not in ct and "application/xhtml+xml" not in ct:
            raise PageFetchError(f"{url}: not an HTML document ({ct or 'no content type'})")
        if not r.encoding:
            r.encoding = r.apparent_encoding or "utf-8"
        html = r.text
        soup = bs4_parse(html)

        events = self._download_all(extract_asset_refs(soup, r.url or url))
        nested: Dict[str, str] = {}
        for ev in events:
            sink(ev)
            if classify_response(ev.resource_type, ev.content_type) != KIND_STYLESHEET:
                continue
            css_text = ev.read_body().decode("utf-8", errors="ignore")
            for u in parse_css_urls(css_text):
                try:
                    nested.setdefault(canonicalize(u, ev.url), "font" if ".woff" in u else "image")
                except UnresolvableReference:
                    continue
        seen = {ev.url for ev in events}
        for ev in self._download_all([(u, t) for u, t in nested.items() if u not in seen]):
            sink(ev)

        title = soup.title.get_text(strip=True) if soup.title else ""
        return CapturedPage(url=url, html=html, title=title, links=extract_anchor_links(soup, url))


class PlaywrightProvider(PageProvider):
    def __init__(self, settings: Settings):
        self.settings = settings
        self._pl = None
        self._browser = None
        self._context = None
        self._clicking = False

    def open(self) -> None:
        try:
            from playwright.sync_api import sync_playwright
        except ImportError as e:
            raise PageProviderError(
                "Playwright not installed. Run: pip install playwright && playwright install"
            ) from e
        try:
            self._pl = sync_playwright().start()
            self._browser = self._pl.chromium.launch(
                headless=self.settings.headless,
                args=["--no-sandbox", "--disable-setuid-sandbox"],
            )
            self._context = self._browser.new_context(user_agent=self.settings.user_agent)
        except Exception as e:
            self.close()
            raise PageProviderError(f"failed to launch browser: {e}") from e

    def _route(self, route, page) -> None:
        req = route.request
        if self._clicking and req.is_navigation_request() and req.frame == page.main_frame:
            route.abort()
        else:
            route.continue_()

    def fetch(self, url: str, sink: Callable[[ResponseEvent], None]) -> CapturedPage:
        from playwright.sync_api import Error as PlaywrightError
        from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

        if self._context is None:
            raise PageProviderError("provider is not open")
        observed = []
        try:
            page = self._context.new_page()
        except PlaywrightError as e:
            raise PageProviderError(f"browser unavailable: {e}") from e
        try:
            try:
                page.route("**/*", lambda route: self._route(route, page))
                page.on("response", observed.append)
            except PlaywrightError as e:
                raise PageProviderError(f"browser unavailable: {e}") from e
            self._clicking = False
            try:
                page.goto(
                    url,
                    wait_until=self.settings.wait_until,
                    timeout=self.settings.navigation_timeout_ms,
                )
            except PlaywrightTimeoutError as e:
                raise CaptureTimeout(f"{url}: {e}") from e
            except PlaywrightError as e:
                raise PageFetchError(f"{url}: {e}") from e
            try:
                title = page.title()
                html = page.content()
                links = page.eval_on_selector_all("a", "els => els.map((a) => a.href)")
                if self.settings.click_interactive:
                    self._clicking = True
                    page.evaluate(CLICK_INTERACTIVE_JS, self.settings.click_delay_ms)
                page.wait_for_timeout(self.settings.settle_ms)
            except PlaywrightError as e:
                raise PageFetchError(f"{url}: {e}") from e
            finally:
                self._clicking = False

            for response in observed:
                sink(self._event(response))
        finally:
            try:
                page.close()
            except Exception as e:
                logging.debug("page close failed for %s: %s", url, e)
        return CapturedPage(url=url, html=html, title=title, links=list(links or []))

    def _event(self, response) -> ResponseEvent:
        from playwright.sync_api import Error as PlaywrightError

        def read_body() -> bytes:
            try:
                return response.body()
            except PlaywrightError as e:
                raise PageFetchError(str(e)) from e

        req = response.request
        return ResponseEvent(
            url=response.url,
            status=response.status,
            content_type=response.headers.get("content-type", ""),
            resource_type=req.resource_type,
            method=req.method,
            read_body=read_body,
        )

    def close(self) -> None:
        for closer in (self._context, self._browser):
            try:
                if closer:
                    closer.close()
            except Exception as e:
                logging.debug("browser shutdown: %s", e)
        try:
            if self._pl:
                self._pl.stop()
        except Exception as e:
            logging.debug("playwright shutdown: %s", e)
        self._context = self._browser = self._pl = None


def get_provider(settings: Settings) -> PageProvider:
    if settings.render_js:
        return PlaywrightProvider(settings)
    return RequestsProvider(settings)


# -------------------- Archive bundle --------------------


def format_capture_date(timestamp_ms: int) -> str:
    dt = datetime.fromtimestamp(timestamp_ms / 1000)
    return f"{dt:%b} {dt.day}, {dt:%Y, %I:%M %p}"


class ArchiveBundle:
    def __init__(self, root: Path, archive_id: str, start_url: str, timestamp: int):
        self.root = Path(root)
        self.archive_id = archive_id
        self.start_url = start_url
        self.timestamp = timestamp

    @classmethod
    def create(cls, archives_dir: Union[str, Path], start_url: str) -> "ArchiveBundle":
        host = urlparse(start_url).hostname or "site"
        timestamp = int(time.time() * 1000)
        archive_id = f"{domain_clean(host)}_{timestamp}"
        root = Path(archives_dir).resolve() / archive_id
        for sub in KIND_DIRS.values():
            (root / "assets" / sub).mkdir(parents=True, exist_ok=True)
        logging.info("created archive directory: %s", root)
        return cls(root, archive_id, start_url, timestamp)

    def metadata(self, title: str, total_pages: int, total_assets: int) -> dict:
        return {
            "id": self.archive_id,
            "originalUrl": self.start_url,
            "title": title,
            "timestamp": self.timestamp,
            "formattedDate": format_capture_date(self.timestamp),
            "totalAssets": total_assets,
            "totalPages": total_pages,
        }

    def finalize(self, index: ResolutionIndex, pages: List[str], title: str) -> dict:
        n_css = rewrite_stylesheet_files(self.root, index)
        if n_css:
            logging.info("rewrote references in %d stylesheet(s)", n_css)
        snapshot = index.as_dict()
        for name in pages:
            try:
                inject_runtime_into_file(self.root / name, self.archive_id, snapshot)
            except OSError as e:
                logging.warning("runtime injection failed for %s: %s", name, e)
        index.save(self.root / URL_MAP_FILE)
        meta = self.metadata(title, len(pages), len(index))
        atomic_write_json(self.root / METADATA_FILE, meta)
        return meta


# -------------------- Capture session --------------------


@dataclass
class CaptureSession:
    settings: Settings
    bundle: ArchiveBundle
    index: ResolutionIndex
    store: ContentStore
    base_domain: str
    queue: Deque[Tuple[str, int]] = field(default_factory=deque)
    visited: Set[str] = field(default_factory=set)
    pages: List[str] = field(default_factory=list)
    title: str = ""

    @classmethod
    def start(cls, start_url: str, settings: Settings) -> "CaptureSession":
        bundle = ArchiveBundle.create(settings.archives_dir, start_url)
        index = ResolutionIndex()
        session = cls(
            settings=settings,
            bundle=bundle,
            index=index,
            store=ContentStore(bundle.root, index),
            base_domain=urlparse(start_url).hostname or "",
        )
        session.queue.append((start_url, 0))
        return session


def page_key(url: str, base_url: str = "") -> Optional[str]:
    """Canonical form used to dedupe crawl targets, None when unresolvable."""
    try:
        return canonicalize(url, base_url or url)
    except UnresolvableReference:
        return None


def enqueue_links(session: CaptureSession, links: Iterable[str], page_url: str, depth: int) -> int:
    added = 0
    for link in links:
        absu = page_key(link, page_url)
        if absu is None:
            continue
        host = urlparse(absu).hostname
        if host != session.base_domain or absu in session.visited:
            continue
        if STATIC_LINK_RE.search(absu):
            continue
        session.queue.append((absu, depth + 1))
        added += 1
    return added


def capture_page(session: CaptureSession, provider: PageProvider, url: str, depth: int) -> Optional[str]:
    name = local_page_name(url, session.base_domain)
    if name is None:
        return None
    logging.info("[depth %d] archiving %s -> %s", depth, url, name)
    page = provider.fetch(url, session.store.record_response)
    if not session.pages and not session.title:
        session.title = page.title
    if depth < session.settings.max_depth:
        added = enqueue_links(session, page.links, url, depth)
        logging.info("queued %d link(s), %d item(s) remaining", added, len(session.queue))
    html = rewrite_page(page.html, url, session.index, session.base_domain)
    (session.bundle.root / name).write_text(html, encoding="utf-8")
    if name not in session.pages:
        session.pages.append(name)
    logging.info("saved %s", name)
    return name


def run_capture(session: CaptureSession, provider: PageProvider) -> dict:
    try:
        provider.open()
        while session.queue:
            url, depth = session.queue.popleft()
            clean = page_key(url)
            if clean is None or clean in session.visited:
                continue
            session.visited.add(clean)
            try:
                capture_page(session, provider, clean, depth)
            except CaptureTimeout as e:
                logging.warning("timed out, skipping page: %s", e)
            except PageFetchError as e:
                logging.warning("failed to archive %s: %s", clean, e)
    except PageProviderError as e:
        logging.error("capture aborted: %s", e)
    finally:
        provider.close()
        meta = session.bundle.finalize(
            session.index, session.pages, session.title or session.base_domain
        )
    logging.info(
        "archiving complete: %d page(s), %d asset(s) in %s",
        meta["totalPages"],
        meta["totalAssets"],
        session.bundle.root,
    )
    return meta


def run_archive(start_url: str, settings: Settings, provider: Optional[PageProvider] = None) -> Optional[dict]:
    p = urlparse(start_url)
    if p.scheme not in DEFAULT_PORTS or not p.hostname:
        logging.error("invalid URL provided: %s", start_url)
        return None
    session = CaptureSession.start(start_url, settings)
    return run_capture(session, provider or get_provider(settings))


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Capture a website into a replayable offline archive.",
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)
    p.add_argument("url", help="http(s) URL to archive")
    p.add_argument("--archives-dir", type=str, default="archives", help="archive root directory")
    p.add_argument("--max-depth", type=int, default=1, help="link depth (0 = start page only)")
    p.add_argument("--schedule", type=int, default=0, help="re-archive every N minutes")
    p.add_argument("--verbose", action="store_true", help="debug logging")

    # render
    p.add_argument("--no-render-js", action="store_true", help="fetch pages with plain HTTP")
    p.add_argument(
        "--navigation-timeout-ms", type=int, default=60000, help="page navigation timeout"
    )
    p.add_argument(
        "--wait-until", type=str, default="networkidle", help="Playwright wait_until"
    )
    p.add_argument("--settle-ms", type=int, default=2000, help="wait after interactions")
    p.add_argument(
        "--no-click", action="store_true", help="do not click buttons and tabs"
    )
    p.add_argument("--click-delay-ms", type=int, default=300, help="pause between clicks")
    p.add_argument("--headed", action="store_true", help="show the browser window")
    p.add_argument(
        "--user-agent", type=str, default=DEFAULT_HEADERS["User-Agent"], help="browser and HTTP user agent"
    )

    # plain HTTP
    p.add_argument("--timeout", type=float, default=15.0, help="request timeout seconds")
    p.add_argument("--workers", type=int, default=8, help="concurrent asset downloads")
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            flat = dict(cfg)
            for g in ("capture", "render", "schedule", "general"):
                if isinstance(cfg.get(g), dict):
                    flat.update(cfg[g])
            parser.set_defaults(**{k.replace("-", "_"): v for k, v in flat.items()})
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        archives_dir=args.archives_dir,
        max_depth=max(0, args.max_depth),
        render_js=not args.no_render_js,
        navigation_timeout_ms=max(1000, args.navigation_timeout_ms),
        wait_until=args.wait_until,
        settle_ms=max(0, args.settle_ms),
        click_interactive=not args.no_click,
        click_delay_ms=max(0, args.click_delay_ms),
        headless=not args.headed,
        user_agent=args.user_agent,
        timeout=args.timeout,
        workers=max(1, args.workers),
        schedule_minutes=max(0, args.schedule),
    )


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    if urlparse(args.url).scheme not in DEFAULT_PORTS:
        print("Invalid URL. Use http:// or https://")
        sys.exit(1)
    settings = settings_from_args(args)

    if settings.schedule_minutes <= 0:
        run_archive(args.url, settings)
        return
    logging.info("scheduled mode: archiving every %d minute(s)", settings.schedule_minutes)
    while True:
        logging.info("scheduled run for %s", args.url)
        run_archive(args.url, settings)
        time.sleep(settings.schedule_minutes * 60)


if __name__ == "__main__":
    main()
