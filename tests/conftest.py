import json
import pathlib
import sys
import threading
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest
from fastapi.testclient import TestClient
import jwt

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.main import create_app
from app.upload_queue import create_upload_queue_service_from_env, set_upload_queue_service
from app.webhook import DispatchResult

JWT_TEST_SECRET = "jwt_test_secret"
PROCESSOR_TEST_KEY = "processor_test_key"
WEBHOOK_TEST_URL = "http://automation.test/webhook/resume"


def issue_token(*, secret: str = JWT_TEST_SECRET, subject: str = "user_recruiter", minutes: int = 30) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "exp": int((now + timedelta(minutes=minutes)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


class StubDispatcher:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.status_code = 200
        self.body = '{"ok": true}'
        self.error: Exception | None = None
        self.on_post = None

    def post(self, url: str, payload: dict) -> DispatchResult:
        self.calls.append((url, payload))
        if self.on_post is not None:
            self.on_post(url, payload)
        if self.error is not None:
            raise self.error
        return DispatchResult(status_code=self.status_code, body=self.body)


class AuthenticatedClient:
    def __init__(self, client: TestClient, *, jwt_secret: str):
        self._client = client
        self._jwt_secret = jwt_secret

    def request(self, method: str, url: str, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if url.startswith("/api/upload-queue") and not url.startswith("/api/upload-queue/process"):
            if "Authorization" not in headers:
                headers["Authorization"] = f"Bearer {issue_token(secret=self._jwt_secret)}"
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def patch(self, url: str, **kwargs):
        return self.request("PATCH", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)


@pytest.fixture
def dispatcher() -> StubDispatcher:
    return StubDispatcher()


@pytest.fixture(autouse=True)
def service(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch, dispatcher: StubDispatcher):
    monkeypatch.setenv("UPLOAD_QUEUE_BACKEND", "memory")
    monkeypatch.setenv("OBJECT_STORAGE_BACKEND", "local")
    monkeypatch.setenv("OBJECT_STORAGE_ROOT", str(tmp_path / "object_store"))
    monkeypatch.setenv("OBJECT_STORAGE_PUBLIC_URL", "http://files.test")
    monkeypatch.setenv("JWT_SHARED_SECRET", JWT_TEST_SECRET)
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "sub,exp")
    monkeypatch.setenv("PROCESSOR_API_KEY", PROCESSOR_TEST_KEY)
    monkeypatch.setenv("UPLOAD_QUEUE_NOTIFIER", "memory")
    for name in (
        "RESUME_PROCESSING_WEBHOOK_URL",
        "REDIS_DSN",
        "MAX_CONCURRENT_PROCESSORS",
        "SYSTEM_SETTINGS_BACKEND",
        "AUDIT_LOG_BACKEND",
    ):
        monkeypatch.delenv(name, raising=False)
    svc = create_upload_queue_service_from_env(dispatcher=dispatcher)
    set_upload_queue_service(svc)
    yield svc
    svc.reset()
    set_upload_queue_service(None)


@pytest.fixture
def client() -> AuthenticatedClient:
    app = create_app()
    base = TestClient(app)
    return AuthenticatedClient(base, jwt_secret=JWT_TEST_SECRET)


class _WebhookStubHandler(BaseHTTPRequestHandler):
    def do_POST(self):  # noqa: N802
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length)
        server = self.server
        server.received.append(  # type: ignore[attr-defined]
            {
                "path": self.path,
                "content_type": self.headers.get("Content-Type"),
                "json": json.loads(body.decode("utf-8")) if body else None,
            }
        )
        status, payload = server.reply  # type: ignore[attr-defined]
        raw = payload.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        self.wfile.write(raw)

    def log_message(self, format, *args):  # noqa: A002
        return


@pytest.fixture
def webhook_server(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("NO_PROXY", "127.0.0.1,localhost")
    monkeypatch.setenv("no_proxy", "127.0.0.1,localhost")
    server = ThreadingHTTPServer(("127.0.0.1", 0), _WebhookStubHandler)
    server.received = []  # type: ignore[attr-defined]
    server.reply = (200, '{"ok": true}')  # type: ignore[attr-defined]
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    server.url = f"http://127.0.0.1:{server.server_address[1]}/webhook/resume"  # type: ignore[attr-defined]
    yield server
    server.shutdown()
    server.server_close()
