"""Parsing and normalisation of stored marketplace session cookies.

Accounts keep their session as whatever the operator pasted: a JSON export
from a browser extension, a Netscape ``cookies.txt`` file, a ``Cookie:``
header or a list of ``Set-Cookie`` lines.  Everything is reduced to plain
cookie dictionaries in the shape Playwright's ``add_cookies`` accepts.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
import time
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlsplit

from .urls import MARKETPLACE_DOMAIN

Cookie = Dict[str, Any]

MARKETPLACE_HOSTS = ("kleinanzeigen.de", "www.kleinanzeigen.de")
ACCESS_TOKEN_COOKIE = "access_token"

COOKIE_ATTR_KEYS = frozenset(
    {
        "path",
        "domain",
        "expires",
        "max-age",
        "secure",
        "httponly",
        "samesite",
        "priority",
        "version",
        "comment",
        "commenturl",
        "discard",
        "port",
        "partitioned",
    }
)

_SAME_SITE = {"strict": "Strict", "lax": "Lax", "none": "None", "no_restriction": "None"}
_TRUTHY = re.compile(r"^(true|1|yes|y)$", re.IGNORECASE)
_HEADER_PAIR = re.compile(r";\s*[^=;\s]+=")


def _default_cookie(name: str, value: str) -> Cookie:
    return {"name": name, "value": value, "domain": MARKETPLACE_DOMAIN, "path": "/"}


def _parse_json(text: str) -> Optional[List[Cookie]]:
    try:
        parsed = json.loads(text)
    except ValueError:
        return None
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        for key in ("cookies", "items"):
            if isinstance(parsed.get(key), list):
                return parsed[key]
    return None


def _parse_header_pairs(raw: str) -> List[Cookie]:
    text = re.sub(r"^cookie:\s*", "", raw.strip(), flags=re.IGNORECASE)
    cookies: List[Cookie] = []
    for segment in text.split(";"):
        name, sep, value = segment.strip().partition("=")
        name = name.strip()
        if not sep or not name or name.lower() in COOKIE_ATTR_KEYS:
            continue
        cookies.append(_default_cookie(name, value.strip()))
    return cookies


def _parse_set_cookie(raw: str) -> Optional[Cookie]:
    line = re.sub(r"^set-cookie:\s*", "", raw.strip(), flags=re.IGNORECASE)
    first, *attributes = line.split(";")
    name, sep, value = first.partition("=")
    name = name.strip()
    if not sep or not name:
        return None
    cookie = _default_cookie(name, value.strip())
    for attribute in attributes:
        key, _, val = attribute.strip().partition("=")
        key = key.strip().lower()
        val = val.strip()
        if key == "domain" and val:
            cookie["domain"] = val
        elif key == "path" and val:
            cookie["path"] = val
        elif key == "secure":
            cookie["secure"] = True
        elif key == "httponly":
            cookie["httpOnly"] = True
        elif key == "samesite" and val:
            cookie["sameSite"] = val
        elif key == "max-age" and val.isdigit():
            cookie["expires"] = int(time.time()) + int(val)
        elif key == "expires" and val:
            try:
                cookie["expires"] = int(parsedate_to_datetime(val).timestamp())
            except (TypeError, ValueError):
                pass
    return cookie


def _parse_netscape(lines: Iterable[str]) -> List[Cookie]:
    cookies: List[Cookie] = []
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split("\t") if "\t" in line else line.split()
        if len(parts) < 7:
            continue
        domain, subdomains, path, secure, expires, name = (p.strip() for p in parts[:6])
        if not name:
            continue
        if _TRUTHY.match(subdomains) and domain and not domain.startswith("."):
            domain = f".{domain}"
        cookie: Cookie = {
            "name": name,
            "value": "\t".join(parts[6:]).strip(),
            "domain": domain or MARKETPLACE_DOMAIN,
            "path": path or "/",
            "secure": bool(_TRUTHY.match(secure)),
        }
        try:
            expiry = float(expires)
        except ValueError:
            expiry = 0
        if expiry > 0:
            cookie["expires"] = expiry
        cookies.append(cookie)
    return cookies


def parse_cookies(raw: Optional[str]) -> List[Cookie]:
    """Parse any supported stored-credential format into raw cookie dicts."""

    text = str(raw or "").strip()
    if not text:
        return []
    parsed_json = _parse_json(text)
    if parsed_json is not None:
        return [item for item in parsed_json if isinstance(item, dict) and item.get("name")]

    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if any(not line.startswith("#") and len(line.split("\t")) >= 7 for line in lines):
        return _parse_netscape(lines)

    if len(lines) == 1 and ";" in lines[0] and "=" in lines[0] and not lines[0].lower().startswith("set-cookie:"):
        pairs = _parse_header_pairs(lines[0])
        if pairs:
            return pairs

    cookies: List[Cookie] = []
    for line in lines:
        if line.lower().startswith("set-cookie:"):
            cookie = _parse_set_cookie(line)
            if cookie:
                cookies.append(cookie)
            continue
        if _HEADER_PAIR.search(line):
            cookies.extend(_parse_header_pairs(line))
            continue
        name, sep, value = line.split(";", 1)[0].partition("=")
        name = name.strip()
        if sep and name and name.lower() not in COOKIE_ATTR_KEYS:
            cookies.append(_default_cookie(name, value.strip()))

    deduped: Dict[str, Cookie] = {}
    for cookie in cookies:
        deduped[f"{cookie['name']}|{cookie.get('domain', '')}|{cookie.get('path', '')}"] = cookie
    return list(deduped.values())


def _hostname(value: str) -> str:
    raw = str(value or "").strip()
    if re.match(r"^https?://", raw, re.IGNORECASE):
        return (urlsplit(raw).hostname or "").lower()
    return re.sub(r"^https?://", "", raw, flags=re.IGNORECASE).lstrip(".").split("/")[0].lower()


def normalize_domain(domain: Optional[str]) -> str:
    raw = str(domain or "").strip()
    if not raw:
        return MARKETPLACE_DOMAIN
    if raw.lstrip(".") in MARKETPLACE_HOSTS:
        return MARKETPLACE_DOMAIN
    return raw


def normalize_expires(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number <= 0:
        return None
    # millisecond timestamps are ~1e12, second timestamps ~1e9
    if number > 100_000_000_000:
        return int(number // 1000)
    return int(number)


def normalize_cookie(cookie: Cookie) -> Cookie:
    name = str(cookie.get("name") or "").strip()
    value = cookie.get("value")
    domain = normalize_domain(cookie.get("domain"))
    normalized: Cookie = {
        "name": name,
        "value": "" if value is None else str(value),
        "path": str(cookie.get("path") or "/"),
        "httpOnly": bool(cookie.get("httpOnly")),
        "secure": cookie.get("secure") is not False,
    }
    for key in ("expires", "expirationDate", "expiry", "expiration"):
        if key in cookie:
            expires = normalize_expires(cookie.get(key))
            if expires is not None:
                normalized["expires"] = expires
            break
    same_site = _SAME_SITE.get(str(cookie.get("sameSite") or "").lower())
    if same_site:
        normalized["sameSite"] = same_site
    url = str(cookie.get("url") or "").strip()
    if url:
        normalized["url"] = url
    elif cookie.get("hostOnly") or name.startswith("__Host-"):
        normalized["url"] = f"https://{domain.lstrip('.') or 'www.kleinanzeigen.de'}"
        normalized["path"] = "/"
        normalized["secure"] = True
    else:
        normalized["domain"] = domain
    return normalized


def is_marketplace_cookie(cookie: Cookie) -> bool:
    for key in ("url", "domain"):
        host = _hostname(cookie.get(key) or "")
        if host and host.endswith("kleinanzeigen.de"):
            return True
    return False


def normalize_cookies(raw_cookies: Iterable[Cookie], *, only_marketplace: bool = True) -> List[Cookie]:
    """Normalise cookies, keep marketplace ones and mirror host-only cookies on both hosts."""

    scoped: List[Cookie] = []
    for cookie in raw_cookies:
        if not cookie.get("name"):
            continue
        has_scope = bool(cookie.get("url") or cookie.get("domain"))
        if only_marketplace and has_scope and not is_marketplace_cookie(cookie):
            continue
        scoped.append(normalize_cookie(cookie))

    expanded: List[Cookie] = []
    for cookie in scoped:
        url = cookie.get("url")
        if url and (urlsplit(url).hostname or "").lower() in MARKETPLACE_HOSTS:
            expanded.extend({**cookie, "url": f"https://{host}"} for host in MARKETPLACE_HOSTS)
        else:
            expanded.append(cookie)

    deduped: Dict[str, Cookie] = {}
    for cookie in expanded:
        scope = f"url:{cookie['url']}" if cookie.get("url") else f"domain:{cookie.get('domain', '')}"
        deduped[f"{cookie['name']}|{scope}|{cookie.get('path', '')}"] = cookie
    return list(deduped.values())


def load_account_cookies(raw: Optional[str]) -> List[Cookie]:
    return normalize_cookies(parse_cookies(raw))


def to_browser_cookie(cookie: Cookie) -> Cookie:
    """Shape a normalised cookie for ``BrowserContext.add_cookies``."""

    browser_cookie = {k: v for k, v in cookie.items() if k in {"name", "value", "httpOnly", "secure", "sameSite", "expires"}}
    if cookie.get("url"):
        browser_cookie["url"] = cookie["url"]
    else:
        browser_cookie["domain"] = cookie.get("domain", MARKETPLACE_DOMAIN)
        browser_cookie["path"] = cookie.get("path", "/")
    return browser_cookie


def cookie_header(cookies: Iterable[Cookie]) -> str:
    seen: Dict[str, str] = {}
    for cookie in cookies:
        seen.setdefault(cookie["name"], cookie.get("value", ""))
    return "; ".join(f"{name}={value}" for name, value in seen.items())


def decode_jwt_payload(token: str) -> Dict[str, Any]:
    raw = (token or "").strip()
    if raw.lower().startswith("bearer "):
        raw = raw[7:].strip()
    parts = raw.split(".")
    if len(parts) < 2:
        return {}
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(segment.encode("ascii")))
    except (binascii.Error, ValueError, UnicodeEncodeError):
        return {}
    return payload if isinstance(payload, dict) else {}


def user_id_from_token(token: str) -> str:
    payload = decode_jwt_payload(token)
    for key in ("preferred_username", "uid", "sub"):
        value = payload.get(key)
        if value:
            return str(value)
    return ""


def user_id_from_cookies(cookies: Iterable[Cookie]) -> str:
    for cookie in cookies:
        if cookie.get("name") == ACCESS_TOKEN_COOKIE and cookie.get("value"):
            user_id = user_id_from_token(str(cookie["value"]))
            if user_id:
                return user_id
    return ""
