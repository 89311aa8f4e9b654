import json
import random
from typing import Any, Dict, Optional
from urllib.parse import urljoin, urlsplit

import requests
from bs4 import BeautifulSoup

from .errors import MetadataFetchError
from .models import LinkMetadata
from .urls import extract_domain

OEMBED_ENDPOINT = "https://www.youtube.com/oembed"

YOUTUBE_HOSTS = {
    "youtube.com",
    "m.youtube.com",
    "music.youtube.com",
    "youtu.be",
}

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
]

LD_ARTICLE_TYPES = {"Article", "NewsArticle", "BlogPosting", "WebPage"}
LD_GRAPH_TYPES = LD_ARTICLE_TYPES | {"VideoObject", "Product"}


def _meta_content(soup: BeautifulSoup, key: str) -> Optional[str]:
    """<meta property=key content=...> or <meta name=key content=...>."""
    tag = soup.find("meta", property=key) or soup.find("meta", attrs={"name": key})
    if tag and tag.get("content"):
        return tag["content"]
    return None


def _first_image(value: Any) -> Optional[str]:
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        return value.get("url")
    return value if isinstance(value, str) else None


def _json_ld(soup: BeautifulSoup) -> Dict[str, Optional[str]]:
    """Title/description/image from JSON-LD blocks, first match wins."""
    found: Dict[str, Optional[str]] = {"title": None, "description": None, "thumbnail_url": None}

    def take(obj: Dict[str, Any], title: Any, image: Any):
        found["title"] = found["title"] or (title if isinstance(title, str) else None)
        description = obj.get("description")
        found["description"] = found["description"] or (description if isinstance(description, str) else None)
        found["thumbnail_url"] = found["thumbnail_url"] or _first_image(image)

    for script in soup.find_all("script", type="application/ld+json"):
        try:
            data = json.loads(script.get_text().strip())
        except ValueError:
            continue
        for obj in data if isinstance(data, list) else [data]:
            if not isinstance(obj, dict):
                continue
            kind = obj.get("@type")
            if kind == "VideoObject":
                take(obj, obj.get("name"), obj.get("thumbnailUrl") or obj.get("thumbnail"))
            elif kind in LD_ARTICLE_TYPES:
                take(obj, obj.get("headline") or obj.get("name"), obj.get("image"))
            elif kind == "Product":
                take(obj, obj.get("name"), obj.get("image"))
            elif kind in ("Organization", "WebSite"):
                take(obj, obj.get("name"), obj.get("logo"))
            for item in obj.get("@graph") or []:
                if isinstance(item, dict) and item.get("@type") in LD_GRAPH_TYPES:
                    take(
                        item,
                        item.get("headline") or item.get("name"),
                        item.get("image") or item.get("thumbnailUrl"),
                    )
    return found


def _clean(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    text = text.strip()
    return text or None


def parse_html_metadata(page: str, url: str) -> LinkMetadata:
    """
    Extract metadata from an HTML page with a fallback chain:
    - title: og:title, JSON-LD, twitter:title, <title>, first <h1>
    - description: og:description, JSON-LD, twitter:description, meta description
    - thumbnail: og:image, JSON-LD, twitter:image (made absolute)
    """
    soup = BeautifulSoup(page or "", "html.parser")
    ld = _json_ld(soup)
    title_tag = soup.title
    h1 = soup.find("h1")

    title = (
        _meta_content(soup, "og:title")
        or ld["title"]
        or _meta_content(soup, "twitter:title")
        or (title_tag.get_text() if title_tag else None)
        or (h1.get_text(" ", strip=True) if h1 else None)
    )
    description = (
        _meta_content(soup, "og:description")
        or ld["description"]
        or _meta_content(soup, "twitter:description")
        or _meta_content(soup, "description")
    )
    thumbnail = (
        _meta_content(soup, "og:image")
        or ld["thumbnail_url"]
        or _meta_content(soup, "twitter:image")
    )
    if thumbnail and not thumbnail.startswith(("http://", "https://")):
        thumbnail = urljoin(url, thumbnail)

    return LinkMetadata(
        title=_clean(title),
        description=_clean(description),
        thumbnail_url=thumbnail,
        domain=extract_domain(url),
    )


def is_youtube_url(url: str) -> bool:
    try:
        host = (urlsplit(url).hostname or "").lower()
    except ValueError:
        return False
    if host.startswith("www."):
        host = host[4:]
    return host in YOUTUBE_HOSTS


def fetch_oembed(url: str, timeout: float) -> Optional[Dict[str, Any]]:
    try:
        resp = requests.get(OEMBED_ENDPOINT, params={"url": url, "format": "json"}, timeout=timeout)
        if resp.status_code != 200:
            return None
        return resp.json()
    except (requests.RequestException, ValueError):
        return None


def _download(url: str, timeout: float) -> requests.Response:
    try:
        resp = requests.get(
            url,
            headers={
                "User-Agent": random.choice(USER_AGENTS),
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-US,en;q=0.9",
                "Cache-Control": "no-cache",
            },
            timeout=timeout,
        )
    except requests.Timeout as e:
        raise MetadataFetchError(f"Request timed out: {url}") from e
    except requests.RequestException as e:
        raise MetadataFetchError(f"Unable to connect: {e}") from e
    if resp.status_code >= 400:
        raise MetadataFetchError(f"HTTP {resp.status_code} for {url}")
    return resp


def fetch_via_proxy(proxy_url: str, url: str, timeout: float) -> LinkMetadata:
    resp = _download_json(proxy_url, {"url": url}, timeout)
    if not isinstance(resp, dict) or resp.get("error"):
        raise MetadataFetchError(f"Malformed metadata response for {url}")
    return LinkMetadata(
        title=_clean(resp.get("title")),
        description=_clean(resp.get("description")),
        thumbnail_url=resp.get("thumbnailUrl") or resp.get("thumbnail_url"),
        domain=resp.get("domain") or extract_domain(url),
    )


def _download_json(endpoint: str, params: Dict[str, str], timeout: float) -> Any:
    try:
        resp = requests.get(endpoint, params=params, timeout=timeout)
    except requests.Timeout as e:
        raise MetadataFetchError("Request timed out") from e
    except requests.RequestException as e:
        raise MetadataFetchError(f"Unable to connect: {e}") from e
    if resp.status_code >= 400:
        raise MetadataFetchError(f"HTTP {resp.status_code} from metadata endpoint")
    try:
        return resp.json()
    except ValueError as e:
        raise MetadataFetchError("Metadata endpoint returned invalid JSON") from e


def get_metadata_for_url(url: str, timeout: float = 10.0, proxy_url: Optional[str] = None) -> LinkMetadata:
    """
    Best-effort metadata pull: oEmbed for YouTube, then the page itself
    (or the configured proxy). Raises MetadataFetchError when nothing
    beyond the domain could be found.
    """
    domain = extract_domain(url)

    if proxy_url:
        meta = fetch_via_proxy(proxy_url, url, timeout)
    else:
        meta = None
        if is_youtube_url(url):
            oembed = fetch_oembed(url, timeout)
            if oembed and oembed.get("title"):
                author = oembed.get("author_name")
                meta = LinkMetadata(
                    title=_clean(oembed.get("title")),
                    description=f"By {author}" if author else None,
                    thumbnail_url=oembed.get("thumbnail_url"),
                    domain="youtube.com",
                )
        if meta is None:
            resp = _download(url, timeout)
            meta = parse_html_metadata(resp.text, url)

    if not meta.domain:
        meta = meta.model_copy(update={"domain": domain})
    if not meta.has_content:
        raise MetadataFetchError(f"No metadata found for {url}")
    return meta


class MetadataFetcher:
    """Callable wrapper so the coordinator can be handed a stub in tests."""

    def __init__(self, timeout: float = 10.0, proxy_url: Optional[str] = None):
        self.timeout = timeout
        self.proxy_url = proxy_url

    def __call__(self, url: str) -> LinkMetadata:
        return get_metadata_for_url(url, timeout=self.timeout, proxy_url=self.proxy_url)
