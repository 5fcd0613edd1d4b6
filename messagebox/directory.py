"""Read-only account and proxy directory backed by a JSON file."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .models import Account, Identifier, Proxy
from .pipeline import resolve_proxy

log = logging.getLogger(__name__)


class JsonAccountDirectory:
    """Accounts and proxies from ``{"accounts": [...], "proxies": [...]}``.

    The file is re-read when its modification time changes; entries that do not
    validate are skipped with a warning.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._mtime: Optional[float] = None
        self._accounts: List[Account] = []
        self._proxies: List[Proxy] = []

    def _load(self) -> None:
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            self._mtime, self._accounts, self._proxies = None, [], []
            return
        if mtime == self._mtime:
            return
        with self.path.open("r", encoding="utf-8") as fh:
            data: Dict[str, Any] = json.load(fh)
        self._accounts = self._parse(Account, data.get("accounts") or [])
        self._proxies = self._parse(Proxy, data.get("proxies") or [])
        self._mtime = mtime
        log.info("Loaded %d accounts and %d proxies from %s", len(self._accounts), len(self._proxies), self.path)

    def _parse(self, model: Any, entries: List[Any]) -> List[Any]:
        parsed = []
        for entry in entries:
            try:
                parsed.append(model.model_validate(entry))
            except ValidationError as exc:
                log.warning("Skipping invalid %s entry in %s: %s", model.__name__, self.path, exc.errors()[:1])
        return parsed

    def accounts(self) -> List[Account]:
        self._load()
        return list(self._accounts)

    def proxies(self) -> List[Proxy]:
        self._load()
        return list(self._proxies)

    def get_account(self, account_id: Identifier) -> Optional[Account]:
        for account in self.accounts():
            if str(account.id) == str(account_id):
                return account
        return None

    def proxy_for(self, account: Account) -> Optional[Proxy]:
        return resolve_proxy(account, self.proxies())
