"""Server-derived fields stored in `raw_events.normalized`.

Geo values come from trusted proxy headers only; IP lookups happen upstream.
"""

from __future__ import annotations
import re
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlsplit

MAX_STRING_LENGTH = 512

TRACKING_KEYS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content", "source", "via", "ref")

BOT_SIGNATURES = (
    "bot", "crawler", "spider", "crawling", "headless", "slurp", "baiduspider", "bingbot",
    "duckduckbot", "facebookexternalhit", "facebot", "ia_archiver", "yandex", "ahrefsbot",
    "semrushbot", "mj12bot", "dotbot", "petalbot", "python-requests", "curl", "wget",
    "postmanruntime", "httpclient", "axios", "okhttp", "go-http-client",
)

COUNTRY_HEADERS = ("x-vercel-ip-country", "cf-ipcountry", "x-country")
REGION_HEADERS = ("x-vercel-ip-country-region", "x-region")
CITY_HEADERS = ("x-vercel-ip-city", "x-city")

_TAGS = re.compile(r"<[^>]*>")
_SPACES = re.compile(r"\s+")
_MOBILE = re.compile(r"mobile|iphone|ipad|android")


def clamp_string(value: Optional[str], max_length: int = MAX_STRING_LENGTH) -> str:
    if not value:
        return ""
    s = str(value).strip()
    return s[:max_length]


def sanitize_text(value: str, max_length: int = 255) -> str:
    cleaned = _SPACES.sub(" ", _TAGS.sub("", value)).strip()
    return cleaned[:max_length]


def normalize_domain(value: str) -> str:
    s = clamp_string(value, 255).lower()
    if not s:
        return ""
    parts = urlsplit(s if s.startswith("http") else f"https://{s}")
    return (parts.hostname or s.split("/")[0]).lower()


def split_path(value: str) -> tuple[str, str]:
    """(pathname, pathname+query) for a page path or absolute URL."""
    s = clamp_string(value, 2048)
    if not s:
        return "/", "/"
    try:
        parts = urlsplit(s)
    except ValueError:
        return s, s
    path = parts.path or "/"
    if not path.startswith("/"):
        path = "/" + path
    url = f"{path}?{parts.query}" if parts.query else path
    return path, url


def normalize_referrer(value: Optional[str]) -> tuple[str, str]:
    """(referrer url without query, bare host without www.)"""
    s = clamp_string(value, 2048)
    if not s:
        return "", ""
    try:
        parts = urlsplit(s)
    except ValueError:
        return s, ""
    if parts.scheme in ("http", "https") and parts.hostname:
        host = parts.hostname.lower()
        domain = host[4:] if host.startswith("www.") else host
        return f"{parts.scheme}://{parts.netloc}{parts.path}", domain
    return s, ""


def normalize_tracking_values(payload: Mapping[str, Any]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for key in TRACKING_KEYS:
        value = clamp_string(payload.get(key), 255).lower()
        if value:
            out[key] = value
    return out


def is_bot_user_agent(user_agent: Optional[str]) -> bool:
    if not user_agent:
        return False
    ua = user_agent.lower()
    return any(sig in ua for sig in BOT_SIGNATURES)


def parse_user_agent(user_agent: Optional[str]) -> Dict[str, str]:
    if not user_agent:
        return {"device": "unknown", "browser": "unknown", "os": "unknown"}
    ua = user_agent.lower()
    device = "mobile" if _MOBILE.search(ua) else "desktop"
    if "edg/" in ua or "edge" in ua:
        browser = "edge"
    elif "opr/" in ua or "opera" in ua:
        browser = "opera"
    elif "chrome" in ua:
        browser = "chrome"
    elif "safari" in ua:
        browser = "safari"
    elif "firefox" in ua:
        browser = "firefox"
    else:
        browser = "unknown"
    if "windows" in ua:
        os_name = "windows"
    elif "iphone" in ua or "ipad" in ua:
        os_name = "ios"
    elif "mac os" in ua:
        os_name = "macos"
    elif "android" in ua:
        os_name = "android"
    elif "linux" in ua:
        os_name = "linux"
    else:
        os_name = "unknown"
    return {"device": device, "browser": browser, "os": os_name}


def _header(headers: Mapping[str, str], names) -> Optional[str]:
    lowered = {str(k).lower(): v for k, v in headers.items()}
    for name in names:
        value = lowered.get(name)
        if value and str(value).strip() and str(value).strip().lower() != "unknown":
            return str(value).strip()
    return None


def geo_from_headers(headers: Mapping[str, str]) -> Dict[str, Optional[str]]:
    country = _header(headers, COUNTRY_HEADERS)
    region = _header(headers, REGION_HEADERS)
    city = _header(headers, CITY_HEADERS)
    return {
        "country": country.upper()[:2] if country else None,
        "region": region[:MAX_STRING_LENGTH] if region else None,
        "city": city[:MAX_STRING_LENGTH] if city else None,
    }


def build_normalized(payload: Mapping[str, Any], user_agent: Optional[str],
                     headers: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    path, url = split_path(payload.get("path") or "/")
    referrer, referrer_domain = normalize_referrer(payload.get("referrer"))
    normalized: Dict[str, Any] = {
        "url": url,
        "path": path,
        "referrer": referrer,
        "referrer_domain": referrer_domain,
        "domain": normalize_domain(payload.get("domain") or ""),
        "utm": normalize_tracking_values(payload),
        "bot": is_bot_user_agent(user_agent),
    }
    normalized.update(parse_user_agent(user_agent))
    normalized.update(geo_from_headers(headers or {}))
    return normalized
