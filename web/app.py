from __future__ import annotations

import asyncio
import logging
import os
import threading
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Optional, Tuple

from flask import Flask, jsonify, request

from messagebox.config import load_config
from messagebox.directory import JsonAccountDirectory
from messagebox.faults import ErrorCode, MessagingError, wrap_fault
from messagebox.media import MAX_FILES
from messagebox.models import Account, ConversationRef, ConversationSnapshot, MediaFile
from messagebox.pipeline import FetchOptions, summarize_conversations
from messagebox.service import MessageService

log = logging.getLogger(__name__)

VALIDATION_ERROR = "VALIDATION_ERROR"
ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
TOO_MANY_FILES = "TOO_MANY_FILES"

_STATUS_BY_CODE = {
    ErrorCode.AUTH_REQUIRED.value: 401,
    ErrorCode.PROXY_TUNNEL_CONNECTION_FAILED.value: 502,
    ErrorCode.MESSAGE_ACTION_TIMEOUT.value: 504,
    ErrorCode.CONVERSATION_ID_REQUIRED.value: 400,
    ErrorCode.MESSAGE_EMPTY.value: 400,
}

# Upper bound for waiting on a coroutine when the caller gave no hard deadline.
RESULT_WAIT_GRACE_S = 30


class AsyncRunner:
    """Runs coroutines on one background event loop shared by all requests."""

    def __init__(self) -> None:
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._loop.run_forever, name="messagebox-loop", daemon=True)
        self._thread.start()

    def run(self, coro: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            future.cancel()
            raise MessagingError(ErrorCode.MESSAGE_ACTION_TIMEOUT, details="request wait exceeded") from None

    def shutdown(self) -> None:
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=5)


class RequestError(Exception):
    def __init__(self, status: int, code: str, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.code = code


def status_for(error: MessagingError) -> int:
    return _STATUS_BY_CODE.get(error.code, 500)


def error_response(error: MessagingError, debug_id: str = "") -> Tuple[Any, int]:
    body = {
        "success": False,
        "error": str(error),
        "code": error.code,
        "kind": error.kind.value,
        "details": error.details,
        "debugId": debug_id,
    }
    if error.data.get("ui_state"):
        body["uiState"] = error.data["ui_state"]
    return jsonify(body), status_for(error)


def snapshot_response(snapshot: ConversationSnapshot, debug_id: str) -> Any:
    payload = snapshot.to_payload()
    return jsonify(
        {
            "success": True,
            "messages": payload["messages"],
            "participant": payload["participant"],
            "adTitle": payload["adTitle"],
            "adImage": payload["adImage"],
            "conversationId": snapshot.conversation_id,
            "conversationUrl": snapshot.conversation_url,
            "debugId": debug_id,
        }
    )


def _target_from(data: Dict[str, Any]) -> ConversationRef:
    return ConversationRef.model_validate(
        {
            "conversationId": str(data.get("conversationId") or "").strip(),
            "conversationUrl": str(data.get("conversationUrl") or "").strip(),
            "participant": str(data.get("participant") or "").strip(),
            "adTitle": str(data.get("adTitle") or "").strip(),
        }
    )


def _hard_deadline(data: Dict[str, Any]) -> Optional[float]:
    raw = data.get("hardDeadlineMs")
    if raw in (None, ""):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise RequestError(400, VALIDATION_ERROR, "hardDeadlineMs must be a number") from None
    return value if value > 0 else None


def _wait_timeout(service: MessageService, hard_deadline_ms: Optional[float]) -> float:
    ceiling = hard_deadline_ms or service.config.action_deadline_ms
    return ceiling / 1000 + RESULT_WAIT_GRACE_S


def create_app(
    service: Optional[MessageService] = None,
    directory: Optional[JsonAccountDirectory] = None,
    runner: Optional[AsyncRunner] = None,
) -> Flask:
    app = Flask(__name__)
    service = service or MessageService(load_config())
    if directory is None:
        accounts_file = os.getenv("KL_ACCOUNTS_FILE") or str(service.config.accounts_file)
        directory = JsonAccountDirectory(Path(accounts_file))
    runner = runner or AsyncRunner()
    app.config["MESSAGE_SERVICE"] = service
    app.config["ACCOUNT_DIRECTORY"] = directory

    def require_account(raw_id: Any) -> Account:
        account_id = str(raw_id or "").strip()
        if not account_id:
            raise RequestError(400, VALIDATION_ERROR, "accountId is required")
        account = directory.get_account(account_id)
        if account is None:
            raise RequestError(404, ACCOUNT_NOT_FOUND, f"account {account_id} not found")
        return account

    @app.errorhandler(RequestError)
    def handle_request_error(error: RequestError):
        return jsonify({"success": False, "error": str(error), "code": error.code}), error.status

    @app.errorhandler(404)
    def not_found(error: Exception):  # pragma: no cover - simple JSON handler
        return jsonify({"error": f"resource not found: {request.path}"}), 404

    @app.errorhandler(Exception)
    def handle_exception(error: Exception):
        log.exception("Unhandled exception: %s", error)
        return error_response(wrap_fault(error, request.path))

    @app.get("/healthz")
    def healthz():
        return jsonify({"status": "ok"})

    @app.get("/api/messages")
    def list_messages():
        account_id = request.args.get("accountId")
        limit_raw = request.args.get("limit")
        try:
            limit = int(limit_raw) if limit_raw else None
        except ValueError:
            raise RequestError(400, VALIDATION_ERROR, "limit must be an integer") from None
        accounts: List[Account] = [require_account(account_id)] if account_id else directory.accounts()
        if not accounts:
            return jsonify([])
        options = FetchOptions(max_conversations=max(1, limit) if limit else None)
        try:
            conversations = runner.run(service.fetch_messages(accounts, directory.proxies(), options))
        except MessagingError as exc:
            return error_response(exc)
        return jsonify(summarize_conversations(conversations))

    @app.get("/api/messages/thread")
    def thread():
        account = require_account(request.args.get("accountId"))
        target = _target_from(request.args)
        debug_id = service.new_debug_id("fetch-thread")
        try:
            snapshot = runner.run(
                service.fetch_thread_messages(account, directory.proxy_for(account), target, debug_id=debug_id)
            )
        except MessagingError as exc:
            return error_response(exc, debug_id)
        return snapshot_response(snapshot, debug_id)

    @app.post("/api/messages/send")
    def send():
        data: Dict[str, Any] = request.get_json(silent=True) or {}
        account = require_account(data.get("accountId"))
        target = _target_from(data)
        hard_deadline_ms = _hard_deadline(data)
        debug_id = service.new_debug_id("send-message")
        try:
            snapshot = runner.run(
                service.send_conversation_message(
                    account,
                    directory.proxy_for(account),
                    target,
                    str(data.get("text") or ""),
                    hard_deadline_ms=hard_deadline_ms,
                    debug_id=debug_id,
                ),
                timeout=_wait_timeout(service, hard_deadline_ms),
            )
        except MessagingError as exc:
            return error_response(exc, debug_id)
        return snapshot_response(snapshot, debug_id)

    @app.post("/api/messages/send-media")
    def send_media():
        form = request.form
        account = require_account(form.get("accountId"))
        target = _target_from(form)
        hard_deadline_ms = _hard_deadline(form)
        uploads = request.files.getlist("images") + request.files.getlist("images[]")
        if len(uploads) > MAX_FILES:
            raise RequestError(400, TOO_MANY_FILES, f"at most {MAX_FILES} images per message")
        files = [
            MediaFile(filename=upload.filename or "", content=upload.read(), mime_type=upload.mimetype or "")
            for upload in uploads
        ]
        debug_id = service.new_debug_id("send-media")
        try:
            snapshot = runner.run(
                service.send_conversation_media(
                    account,
                    directory.proxy_for(account),
                    target,
                    str(form.get("text") or ""),
                    files,
                    hard_deadline_ms=hard_deadline_ms,
                    debug_id=debug_id,
                ),
                timeout=_wait_timeout(service, hard_deadline_ms),
            )
        except MessagingError as exc:
            return error_response(exc, debug_id)
        return snapshot_response(snapshot, debug_id)

    @app.post("/api/messages/offer/decline")
    def decline_offer():
        data: Dict[str, Any] = request.get_json(silent=True) or {}
        account = require_account(data.get("accountId"))
        target = _target_from(data)
        hard_deadline_ms = _hard_deadline(data)
        debug_id = service.new_debug_id("decline-offer")
        try:
            snapshot = runner.run(
                service.decline_conversation_offer(
                    account,
                    directory.proxy_for(account),
                    target,
                    hard_deadline_ms=hard_deadline_ms,
                    debug_id=debug_id,
                ),
                timeout=_wait_timeout(service, hard_deadline_ms),
            )
        except MessagingError as exc:
            return error_response(exc, debug_id)
        return snapshot_response(snapshot, debug_id)

    return app


if __name__ == "__main__":  # pragma: no cover - manual run helper
    logging.basicConfig(level=logging.INFO)
    create_app().run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")), debug=False)
