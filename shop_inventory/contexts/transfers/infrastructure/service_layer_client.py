from __future__ import annotations

import json
import ssl
import threading
import time
import urllib.error
import urllib.request
from http.cookies import CookieError, SimpleCookie
from typing import Any, Dict


SESSION_COOKIE = "B1SESSION"
DEFAULT_SESSION_TTL_SECONDS = 25 * 60


class ServiceLayerError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ServiceLayerClient:
    """Minimal SAP Business One Service Layer client.

    Sessions are opened with ``POST Login`` and reused until they expire or the
    server answers 401, in which case the client logs in again and replays the
    request once.
    """

    def __init__(
        self,
        base_url: str,
        *,
        company_db: str,
        username: str,
        password: str,
        timeout_seconds: int = 20,
        verify_ssl: bool = True,
        session_ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
    ) -> None:
        if not str(base_url or "").strip():
            raise ServiceLayerError("ERP_BASE_URL is not configured.")
        self.base_url = str(base_url).rstrip("/")
        self._company_db = company_db
        self._username = username
        self._password = password
        self._timeout = max(1, int(timeout_seconds))
        self._context = None if verify_ssl else ssl._create_unverified_context()
        self._session_ttl = max(60, int(session_ttl_seconds))
        self._session_id: str | None = None
        self._session_expires_at = 0.0
        self._lock = threading.Lock()

    def post(self, resource: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        session_id = self._ensure_session()
        status, body = self._send("POST", resource, payload, session_id)
        if status == 401:
            self._invalidate_session()
            status, body = self._send("POST", resource, payload, self._ensure_session())
        if status >= 400:
            raise ServiceLayerError(f"ERP HTTP {status}: {_error_detail(body)}", status_code=status)
        return _decode_object(body)

    def login(self) -> str:
        payload = {
            "CompanyDB": self._company_db,
            "UserName": self._username,
            "Password": self._password,
        }
        request = self._build_request("POST", "Login", payload, session_id=None)
        try:
            with urllib.request.urlopen(request, timeout=self._timeout, context=self._context) as response:
                body = response.read().decode("utf-8")
                cookie_header = response.headers.get("Set-Cookie") if response.headers else None
        except urllib.error.HTTPError as exc:
            error_body = exc.read().decode("utf-8") if exc.fp else ""
            raise ServiceLayerError(
                f"ERP login failed: HTTP {exc.code}: {_error_detail(error_body)}",
                status_code=exc.code,
            ) from exc
        except urllib.error.URLError as exc:
            raise ServiceLayerError(f"ERP connection error: {exc.reason}") from exc

        session_id = str(_decode_object(body).get("SessionId") or "").strip() or _session_from_cookie(cookie_header)
        if not session_id:
            raise ServiceLayerError("ERP login did not return a session.")
        self._session_id = session_id
        self._session_expires_at = time.monotonic() + self._session_ttl
        return session_id

    def _ensure_session(self) -> str:
        with self._lock:
            if self._session_id and time.monotonic() < self._session_expires_at:
                return self._session_id
            return self.login()

    def _invalidate_session(self) -> None:
        with self._lock:
            self._session_id = None
            self._session_expires_at = 0.0

    def _build_request(
        self,
        method: str,
        resource: str,
        payload: Dict[str, Any] | None,
        *,
        session_id: str | None,
    ) -> urllib.request.Request:
        headers = {"Accept": "application/json"}
        data = None
        if payload is not None:
            headers["Content-Type"] = "application/json"
            data = json.dumps(payload, separators=(",", ":"), ensure_ascii=True).encode("utf-8")
        if session_id:
            headers["Cookie"] = f"{SESSION_COOKIE}={session_id}"
        url = f"{self.base_url}/{resource.lstrip('/')}"
        return urllib.request.Request(url, data=data, headers=headers, method=method.upper())

    def _send(
        self,
        method: str,
        resource: str,
        payload: Dict[str, Any] | None,
        session_id: str,
    ) -> tuple[int, str]:
        request = self._build_request(method, resource, payload, session_id=session_id)
        try:
            with urllib.request.urlopen(request, timeout=self._timeout, context=self._context) as response:
                return int(getattr(response, "status", 200) or 200), response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            error_body = exc.read().decode("utf-8") if exc.fp else ""
            return int(exc.code), error_body
        except urllib.error.URLError as exc:
            raise ServiceLayerError(f"ERP connection error: {exc.reason}") from exc


def _decode_object(body: str) -> Dict[str, Any]:
    if not body:
        return {}
    try:
        decoded = json.loads(body)
    except json.JSONDecodeError as exc:
        raise ServiceLayerError("ERP returned invalid JSON.") from exc
    return decoded if isinstance(decoded, dict) else {}


def _error_detail(body: str) -> str:
    # Service Layer errors look like {"error": {"code": -10, "message": {"value": "..."}}}.
    try:
        decoded = json.loads(body) if body else {}
    except json.JSONDecodeError:
        return body[:1000]
    error = decoded.get("error") if isinstance(decoded, dict) else None
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, dict):
            message = message.get("value")
        if message:
            return str(message)[:1000]
    return body[:1000]


def _session_from_cookie(cookie_header: str | None) -> str | None:
    if not cookie_header:
        return None
    cookie = SimpleCookie()
    try:
        cookie.load(cookie_header)
    except CookieError:
        return None
    morsel = cookie.get(SESSION_COOKIE)
    return morsel.value if morsel is not None else None
