import base64
import json

from messagebox.cookies import (
    cookie_header,
    load_account_cookies,
    normalize_expires,
    parse_cookies,
    to_browser_cookie,
    user_id_from_cookies,
)


def _jwt(payload: dict) -> str:
    body = base64.urlsafe_b64encode(json.dumps(payload).encode()).decode().rstrip("=")
    return f"eyJhbGciOiJIUzI1NiJ9.{body}.signature"


def test_extension_export_is_normalised() -> None:
    raw = json.dumps(
        [
            {"name": "session", "value": "abc", "domain": "www.kleinanzeigen.de", "expirationDate": 1893456000000, "sameSite": "no_restriction"},
            {"name": "tracker", "value": "x", "domain": ".example.com"},
        ]
    )

    cookies = load_account_cookies(raw)

    assert len(cookies) == 1
    cookie = cookies[0]
    assert cookie["domain"] == ".kleinanzeigen.de"
    assert cookie["expires"] == 1893456000
    assert cookie["sameSite"] == "None"
    assert cookie["secure"] is True


def test_cookie_header_string() -> None:
    cookies = parse_cookies("Cookie: a=1; b=2; path=/")

    assert [(c["name"], c["value"]) for c in cookies] == [("a", "1"), ("b", "2")]
    assert all(c["domain"] == ".kleinanzeigen.de" for c in cookies)


def test_netscape_file() -> None:
    text = "# Netscape HTTP Cookie File\nkleinanzeigen.de\tTRUE\t/\tTRUE\t1893456000\tsession\tabc\n"

    cookies = parse_cookies(text)

    assert cookies == [
        {"name": "session", "value": "abc", "domain": ".kleinanzeigen.de", "path": "/", "secure": True, "expires": 1893456000.0}
    ]


def test_set_cookie_lines() -> None:
    text = "Set-Cookie: session=abc; Path=/; Secure; HttpOnly\nSet-Cookie: other=1; Domain=www.kleinanzeigen.de"

    cookies = {c["name"]: c for c in parse_cookies(text)}

    assert cookies["session"]["httpOnly"] is True
    assert cookies["other"]["domain"] == "www.kleinanzeigen.de"


def test_host_only_cookie_is_mirrored_on_both_hosts() -> None:
    raw = json.dumps([{"name": "__Host-token", "value": "t", "domain": "www.kleinanzeigen.de", "hostOnly": True}])

    cookies = load_account_cookies(raw)

    assert sorted(c["url"] for c in cookies) == ["https://kleinanzeigen.de", "https://www.kleinanzeigen.de"]
    assert "domain" not in to_browser_cookie(cookies[0])


def test_expiry_units() -> None:
    assert normalize_expires("1893456000") == 1893456000
    assert normalize_expires(1893456000123) == 1893456000
    assert normalize_expires(-1) is None
    assert normalize_expires("soon") is None


def test_user_id_from_access_token_cookie() -> None:
    cookies = load_account_cookies(json.dumps([{"name": "access_token", "value": _jwt({"preferred_username": "12345"}), "domain": ".kleinanzeigen.de"}]))

    assert user_id_from_cookies(cookies) == "12345"


def test_cookie_header_keeps_first_value() -> None:
    header = cookie_header([{"name": "a", "value": "1"}, {"name": "a", "value": "2"}, {"name": "b", "value": "3"}])

    assert header == "a=1; b=3"


def test_empty_input() -> None:
    assert load_account_cookies("") == []
    assert load_account_cookies(None) == []
