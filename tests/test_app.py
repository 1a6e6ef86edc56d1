import asyncio
import json
import os
import random
import string
import sys
import tempfile
import threading
import time
from pathlib import Path
from typing import Iterator
from urllib.parse import urlparse

import pytest
import requests

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Importing the app module builds a default instance; keep it out of the working tree.
os.environ.setdefault("FARMSEARCH_DATA_DIR", tempfile.mkdtemp(prefix="farmsearch-test-"))

from farmsearch.main import create_app  # noqa: E402


class InlineClient(requests.Session):
    """
    requests.Session that dispatches straight into an ASGI app instead of the network.
    """

    def __init__(self, app) -> None:
        super().__init__()
        self.app = app
        self.base_url = "http://testserver"

    def request(self, method, url, **kwargs):  # type: ignore[override]
        parsed = urlparse(url)
        path = parsed.path or "/"
        query = parsed.query.encode("utf-8")
        headers = [
            (b"accept", b"application/json"),
        ]
        body = kwargs.get("data") or kwargs.get("content") or b""
        if kwargs.get("json") is not None:
            body = json.dumps(kwargs["json"])
            headers.append((b"content-type", b"application/json"))
        if isinstance(body, str):
            body = body.encode("utf-8")
        scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": method.upper(),
            "scheme": parsed.scheme or "http",
            "path": path,
            "raw_path": path.encode("utf-8"),
            "root_path": "",
            "query_string": query,
            "headers": headers,
            "server": (parsed.hostname or "testserver", parsed.port or 80),
            "client": ("testclient", 50000),
        }
        request_messages = [
            {
                "type": "http.request",
                "body": body,
                "more_body": False,
            }
        ]

        async def receive() -> dict:
            return request_messages.pop(0) if request_messages else {"type": "http.disconnect"}

        collected: list[dict] = []

        async def send(message: dict) -> None:
            collected.append(message)

        asyncio.run(self.app(scope, receive, send))

        status = 500
        response_headers = requests.structures.CaseInsensitiveDict()
        chunks: list[bytes] = []
        for message in collected:
            if message["type"] == "http.response.start":
                status = message["status"]
                for header_key, header_value in message.get("headers", []):
                    response_headers[header_key.decode("latin-1")] = header_value.decode("latin-1")
            elif message["type"] == "http.response.body":
                chunks.append(message.get("body", b""))
        response = requests.Response()
        response.status_code = status
        response._content = b"".join(chunks)
        response.url = url
        response.headers = response_headers
        response.encoding = "utf-8"
        return response


@pytest.fixture()
def http_session(tmp_path: Path) -> Iterator[InlineClient]:
    # Cheap bcrypt cost keeps the suite fast.
    (tmp_path / "settings.json").write_text(
        json.dumps({"auth": {"bcrypt_rounds": 4}}), encoding="utf-8"
    )
    client = InlineClient(create_app(tmp_path))
    try:
        yield client
    finally:
        client.close()


def _signup(session: InlineClient, email: str = "alice@example.com") -> dict:
    resp = session.post(
        f"{session.base_url}/api/signup",
        json={"name": "Alice", "email": email, "password": "password123"},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["user"]


def test_health(http_session: InlineClient) -> None:
    resp = http_session.get(f"{http_session.base_url}/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_anonymous_session_and_profile(http_session: InlineClient) -> None:
    base = http_session.base_url
    state = http_session.get(f"{base}/api/session").json()
    assert state == {"authenticated": False, "user": None, "loading": False}

    data = http_session.get(f"{base}/api/profile").json()
    assert len(data["profile"]["tasks"]) == 3
    assert len(data["profile"]["reminders"]) == 2
    assert data["summary"] == {"questionsAsked": 0, "savedTips": 0, "openTasks": 3}


def test_signup_login_logout_flow(http_session: InlineClient) -> None:
    base = http_session.base_url
    user = _signup(http_session, "Alice@Example.com")
    assert user["email"] == "alice@example.com"
    assert "passwordHash" not in user

    assert http_session.post(f"{base}/api/logout").json() == {"ok": True}
    assert http_session.get(f"{base}/api/session").json()["authenticated"] is False

    resp = http_session.post(
        f"{base}/api/login", json={"email": " ALICE@example.com", "password": "password123"}
    )
    assert resp.status_code == 200
    assert resp.json()["user"] == {"id": user["id"], "name": "Alice", "email": "alice@example.com"}
    assert http_session.get(f"{base}/api/session").json()["user"]["id"] == user["id"]


def test_auth_errors_map_to_status_codes(http_session: InlineClient) -> None:
    base = http_session.base_url
    _signup(http_session)

    resp = http_session.post(
        f"{base}/api/signup",
        json={"name": "Alice", "email": "ALICE@example.com", "password": "password123"},
    )
    assert resp.status_code == 409
    assert resp.json()["code"] == "EMAIL_IN_USE"

    resp = http_session.post(
        f"{base}/api/signup",
        json={"name": "Bo", "email": "bob@example.com", "password": "password123"},
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "INVALID_SIGNUP"

    resp = http_session.post(
        f"{base}/api/signup",
        json={
            "name": "Bobby",
            "email": "bob@example.com",
            "password": "password123",
            "confirmPassword": "password321",
        },
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "Passwords do not match."

    wrong = http_session.post(
        f"{base}/api/login", json={"email": "alice@example.com", "password": "nope-nope"}
    )
    unknown = http_session.post(
        f"{base}/api/login", json={"email": "ghost@example.com", "password": "password123"}
    )
    assert wrong.status_code == unknown.status_code == 401
    assert wrong.json() == unknown.json()


def test_profile_endpoints(http_session: InlineClient) -> None:
    base = http_session.base_url
    _signup(http_session)

    resp = http_session.post(
        f"{base}/api/questions",
        json={"prompt": "Best time to plant beans?", "answer": "After the last frost."},
    )
    assert resp.status_code == 200
    history = resp.json()["profile"]["questionsHistory"]
    assert history[0]["prompt"] == "Best time to plant beans?"

    tips = http_session.post(
        f"{base}/api/tips", json={"title": "", "content": "After the last frost."}
    ).json()["profile"]["savedTips"]
    assert tips[0]["title"] == "Saved answer"

    data = http_session.delete(f"{base}/api/tips/{tips[0]['id']}").json()
    assert data["profile"]["savedTips"] == []

    data = http_session.post(f"{base}/api/tasks/task-3/toggle").json()
    assert data["profile"]["tasks"][2]["completed"] is True
    assert data["summary"]["openTasks"] == 2

    data = http_session.post(f"{base}/api/reminders", json={"message": " Call the vet "}).json()
    assert data["profile"]["reminders"][0]["message"] == "Call the vet"
    reminder_id = data["profile"]["reminders"][0]["id"]
    data = http_session.delete(f"{base}/api/reminders/{reminder_id}").json()
    assert len(data["profile"]["reminders"]) == 2

    data = http_session.delete(f"{base}/api/questions").json()
    assert data["profile"]["questionsHistory"] == []


def test_profile_persists_across_app_restart(tmp_path: Path, http_session: InlineClient) -> None:
    base = http_session.base_url
    _signup(http_session)
    http_session.post(f"{base}/api/tips", json={"title": "Mulch", "content": "Keeps soil moist."})

    restarted = InlineClient(create_app(tmp_path))
    data = restarted.get(f"{base}/api/profile").json()
    assert [tip["title"] for tip in data["profile"]["savedTips"]] == ["Mulch"]
    restarted.close()


async def _asgi_status(app, method: str, path: str) -> int:
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": path,
        "raw_path": path.encode("utf-8"),
        "root_path": "",
        "query_string": b"",
        "headers": [],
        "server": ("testserver", 80),
        "client": ("testclient", 50000),
    }
    messages = [{"type": "http.request", "body": b"", "more_body": False}]
    statuses: list[int] = []

    async def receive() -> dict:
        return messages.pop(0) if messages else {"type": "http.disconnect"}

    async def send(message: dict) -> None:
        if message["type"] == "http.response.start":
            statuses.append(message["status"])

    await app(scope, receive, send)
    return statuses[0]


def test_blocked_handlers_do_not_stall_other_requests(http_session: InlineClient) -> None:
    app = http_session.app
    services = app.state.services
    acquired = threading.Event()
    release = threading.Event()

    def hold_locks() -> None:
        with services.auth._lock, services.profile._lock:
            acquired.set()
            release.wait(timeout=2)

    holder = threading.Thread(target=hold_locks)
    holder.start()
    assert acquired.wait(timeout=2)

    async def scenario() -> tuple:
        logout = asyncio.create_task(_asgi_status(app, "POST", "/api/logout"))
        profile = asyncio.create_task(_asgi_status(app, "GET", "/api/profile"))
        started = time.perf_counter()
        await asyncio.sleep(0.05)
        health = await _asgi_status(app, "GET", "/api/health")
        elapsed = time.perf_counter() - started
        pending = not logout.done() and not profile.done()
        release.set()
        return health, elapsed, pending, await logout, await profile

    try:
        health, elapsed, pending, logout_status, profile_status = asyncio.run(scenario())
    finally:
        release.set()
        holder.join()

    assert health == 200
    assert elapsed < 1
    assert pending
    assert logout_status == profile_status == 200


def _random_text(length: int) -> str:
    alphabet = string.ascii_letters + string.digits + " -_.,?@"
    return "".join(random.choice(alphabet) for _ in range(random.randint(0, length)))


def test_api_fuzz(http_session: InlineClient) -> None:
    random.seed(1)
    base = http_session.base_url
    actions = [
        ("post", "/api/login", lambda: {"email": _random_text(20), "password": _random_text(12)}),
        ("post", "/api/signup", lambda: {"name": _random_text(10), "email": _random_text(20), "password": _random_text(12)}),
        ("post", "/api/logout", lambda: None),
        ("post", "/api/questions", lambda: {"prompt": _random_text(40), "answer": _random_text(80)}),
        ("post", "/api/tips", lambda: {"title": _random_text(10), "content": _random_text(40)}),
        ("post", "/api/reminders", lambda: {"message": _random_text(30)}),
        ("post", "/api/tasks/task-1/toggle", lambda: None),
        ("delete", "/api/reminders/reminder-1", lambda: None),
        ("get", "/api/profile", lambda: None),
        ("get", "/api/session", lambda: None),
    ]
    for _ in range(40):
        method, path, build = random.choice(actions)
        payload = build()
        if method == "get":
            resp = http_session.get(f"{base}{path}")
        elif payload is None:
            resp = getattr(http_session, method)(f"{base}{path}")
        else:
            resp = getattr(http_session, method)(f"{base}{path}", json=payload)
        assert resp.status_code < 500

    resp = http_session.post(
        f"{base}/api/questions",
        data="{not json",
    )
    assert resp.status_code == 200
