import json
import os
from pathlib import Path

from messagebox.directory import JsonAccountDirectory


def _write(path: Path, data: dict, mtime: float) -> None:
    path.write_text(json.dumps(data), encoding="utf-8")
    os.utime(path, (mtime, mtime))


def test_accounts_and_proxies_are_loaded(tmp_path: Path) -> None:
    path = tmp_path / "accounts.json"
    _write(
        path,
        {
            "accounts": [
                {"id": 7, "cookies": [{"name": "session", "value": "abc"}], "proxyId": "3", "profileName": "Seller"},
                {"cookie": "orphan"},
            ],
            "proxies": [{"id": 3, "host": "http://10.0.0.1/", "port": 8080, "protocol": "SOCKS5"}],
        },
        1_700_000_000,
    )
    directory = JsonAccountDirectory(path)

    [account] = directory.accounts()
    proxy = directory.proxy_for(account)

    assert account.label == "Seller"
    assert json.loads(account.cookie)[0]["name"] == "session"
    assert directory.get_account("7") == account
    assert directory.get_account(8) is None
    assert proxy is not None and proxy.host == "10.0.0.1"
    assert proxy.url() == "socks5h://10.0.0.1:8080"
    assert proxy.server(for_browser=True) == "socks5://10.0.0.1:8080"


def test_file_is_reread_when_modified(tmp_path: Path) -> None:
    path = tmp_path / "accounts.json"
    _write(path, {"accounts": [{"id": 1}]}, 1_700_000_000)
    directory = JsonAccountDirectory(path)
    assert [a.id for a in directory.accounts()] == [1]

    _write(path, {"accounts": [{"id": 1}, {"id": 2}]}, 1_700_000_100)

    assert [a.id for a in directory.accounts()] == [1, 2]


def test_missing_file_is_empty(tmp_path: Path) -> None:
    directory = JsonAccountDirectory(tmp_path / "absent.json")

    assert directory.accounts() == []
    assert directory.proxies() == []
