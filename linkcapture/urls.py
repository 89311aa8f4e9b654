import re
from urllib.parse import unquote, urlsplit, urlunsplit

from .errors import ValidationError

TRACKING_PARAMS = {"fbclid", "gclid", "ref", "source"}
TRACKING_PREFIXES = ("utm_",)

# First http(s) token in free text
URL_PATTERN = re.compile(r"https?://[^\s<>\"']+", re.IGNORECASE)

# A bare domain someone typed without a scheme, e.g. "example.com/path"
BARE_DOMAIN_PATTERN = re.compile(
    r"^(?:(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,}"
    r"|localhost"
    r"|\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})"
    r"(?::\d{1,5})?(?:/\S*)?$",
    re.IGNORECASE,
)

TRAILING_PUNCTUATION = ".,;:!?'\""
CLOSING_BRACKETS = {")": "(", "]": "[", "}": "{"}


def _trim_prose_suffix(token: str) -> str:
    """Drop sentence punctuation glued to a URL inside prose."""
    while token:
        last = token[-1]
        if last in TRAILING_PUNCTUATION:
            token = token[:-1]
        elif last in CLOSING_BRACKETS and token.count(last) > token.count(CLOSING_BRACKETS[last]):
            token = token[:-1]
        else:
            break
    return token


def extract_url(text: str) -> str | None:
    """
    Pull the first scheme-qualified URL out of a string.

    A string that is exactly one URL comes back unchanged; a URL embedded
    in prose ("look at https://x.com/a.") loses trailing punctuation.
    """
    if not text:
        return None
    stripped = text.strip()
    match = URL_PATTERN.search(stripped)
    if not match:
        return None
    token = match.group(0)
    if token == stripped:
        return token
    return _trim_prose_suffix(token) or None


def coerce_url(raw: str) -> str:
    """
    Return a scheme-qualified URL for manual input.

    Adds https:// to a bare domain the user typed; otherwise behaves like
    extract_url but raises ValidationError when nothing usable is found.
    """
    if raw is None or not raw.strip():
        raise ValidationError("URL is required")
    url = extract_url(raw)
    if url:
        return url
    candidate = raw.strip()
    if BARE_DOMAIN_PATTERN.match(candidate):
        return f"https://{candidate}"
    raise ValidationError("Please enter a valid URL")


def _strip_www(host: str) -> str:
    while host.startswith("www.") and "." in host[4:]:
        host = host[4:]
    return host


def _is_tracking_param(segment: str) -> bool:
    key = unquote(segment.split("=", 1)[0]).lower()
    return key in TRACKING_PARAMS or key.startswith(TRACKING_PREFIXES)


def normalize(raw_url: str) -> str:
    """
    Canonicalize a URL into its duplicate-detection key:
    - Extract the first http(s) URL if the input is prose
    - Lower-case scheme and host, drop leading www. labels
    - Remove tracking params (utm_*, fbclid, gclid, ref, source) as whole params
    - Drop the fragment and trailing slashes on the path
    Applying it twice gives the same result as applying it once.
    """
    url = extract_url(raw_url or "")
    if not url:
        raise ValidationError("Please enter a valid URL")

    # urlsplit and .port raise ValueError on a bad IPv6 bracket or port
    try:
        parsed = urlsplit(url)
        host = _strip_www((parsed.hostname or "").lower())
        port = parsed.port
    except ValueError:
        raise ValidationError("Please enter a valid URL")
    if not host:
        raise ValidationError("Please enter a valid URL")
    scheme = parsed.scheme.lower()

    netloc = f"[{host}]" if ":" in host else host
    if port is not None:
        netloc = f"{netloc}:{port}"
    if parsed.username is not None:
        userinfo = parsed.username
        if parsed.password is not None:
            userinfo = f"{userinfo}:{parsed.password}"
        netloc = f"{userinfo}@{netloc}"

    kept = [
        segment
        for segment in parsed.query.split("&")
        if segment and not _is_tracking_param(segment)
    ]
    query = "&".join(kept)

    path = parsed.path.rstrip("/")

    return urlunsplit((scheme, netloc, path, query, ""))


def extract_domain(url: str) -> str:
    """Host of a URL without www., used as the placeholder title."""
    try:
        host = (urlsplit(url.strip()).hostname or "").lower()
    except ValueError:
        host = ""
    if not host:
        match = re.match(r"^(?:https?://)?(?:www\.)?([^/?#:]+)", url.strip(), re.IGNORECASE)
        return match.group(1).lower() if match else url
    return _strip_www(host)


def is_valid(raw: str) -> bool:
    try:
        normalize(coerce_url(raw))
    except ValidationError:
        return False
    return True
