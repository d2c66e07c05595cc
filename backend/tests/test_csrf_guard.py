import pytest
from fastapi import Response
from fastapi.testclient import TestClient


class DummyRequest:
    def __init__(self, cookies=None):
        self.cookies = cookies or {}


def test_token_verifies_against_its_secret(main_module):
    secret = main_module.new_csrf_secret()
    token = main_module.create_csrf_token(secret)

    assert main_module.verify_csrf_token(secret, token)
    assert not main_module.verify_csrf_token(main_module.new_csrf_secret(), token)


@pytest.mark.parametrize("token", [None, "", "nodash", "abcd-", "abcd-tampered"])
def test_bad_tokens_are_rejected(main_module, token):
    assert not main_module.verify_csrf_token("secret", token)


def test_missing_secret_rejects_everything(main_module):
    token = main_module.create_csrf_token("secret")

    assert not main_module.verify_csrf_token(None, token)
    assert not main_module.verify_csrf_token("", token)


def test_tokens_are_salted(main_module):
    secret = main_module.new_csrf_secret()

    assert main_module.create_csrf_token(secret) != main_module.create_csrf_token(secret)


@pytest.mark.parametrize(
    "method,path,expected",
    [
        ("POST", "/api/messages/send/u_2", True),
        ("PUT", "/api/users", True),
        ("DELETE", "/api/messages/u_2", True),
        ("GET", "/api/messages/u_2", False),
        ("HEAD", "/api/messages/u_2", False),
        ("OPTIONS", "/api/messages/send/u_2", False),
        ("POST", "/api/auth/login", False),
        ("POST", "/api/auth/logout", False),
        ("POST", "/elsewhere", False),
    ],
)
def test_guard_scope(main_module, method, path, expected):
    assert main_module.requires_csrf(method, path) is expected


def test_csrf_endpoint_reuses_existing_secret(main_module):
    response = Response()

    payload = main_module.csrf_token(DummyRequest({"_csrf": "existing-secret"}), response)

    cookies = response.headers.getlist("set-cookie")
    assert not any(c.startswith("_csrf=") for c in cookies)
    assert any(c.startswith(f"XSRF-TOKEN={payload['csrfToken']}") for c in cookies)
    assert main_module.verify_csrf_token("existing-secret", payload["csrfToken"])


def test_csrf_endpoint_creates_secret_when_absent(main_module):
    response = Response()

    main_module.csrf_token(DummyRequest(), response)

    cookies = response.headers.getlist("set-cookie")
    assert any(c.startswith("_csrf=") and "httponly" in c.lower() for c in cookies)
    assert any(c.startswith("XSRF-TOKEN=") and "max-age=3600" in c.lower() for c in cookies)


def _signed_in_client(module, store):
    store.add_user("u_peer", "peer_user")
    client = TestClient(module.app)
    res = client.post(
        "/api/auth/signup",
        json={
            "fullName": "Jane Doe",
            "username": "jane_doe",
            "password": "password1",
            "confirmPassword": "password1",
            "gender": "female",
        },
    )
    assert res.status_code == 201
    return client


def test_send_without_header_is_forbidden(main_module, memory_store):
    client = _signed_in_client(main_module, memory_store)

    res = client.post("/api/messages/send/u_peer", json={"message": "hi"})

    assert res.status_code == 403
    assert res.json() == {"error": "Invalid CSRF token"}
    assert memory_store.messages == {}


def test_send_with_mismatched_header_is_forbidden(main_module, memory_store):
    client = _signed_in_client(main_module, memory_store)
    foreign = main_module.create_csrf_token(main_module.new_csrf_secret())

    res = client.post("/api/messages/send/u_peer", json={"message": "hi"}, headers={"CSRF-Token": foreign})

    assert res.status_code == 403
    assert res.json() == {"error": "Invalid CSRF token"}


def test_send_with_header_from_cookie_succeeds(main_module, memory_store):
    client = _signed_in_client(main_module, memory_store)

    res = client.post(
        "/api/messages/send/u_peer",
        json={"message": "hi"},
        headers={"CSRF-Token": client.cookies.get("XSRF-TOKEN")},
    )

    assert res.status_code == 201
    assert res.json()["message"] == "hi"


def test_token_from_csrf_endpoint_is_accepted(main_module, memory_store):
    client = _signed_in_client(main_module, memory_store)

    token = client.get("/api/csrf-token").json()["csrfToken"]
    res = client.post("/api/messages/send/u_peer", json={"message": "hi"}, headers={"X-CSRF-Token": token})

    assert res.status_code == 201


def test_reads_do_not_need_token(main_module, memory_store):
    client = _signed_in_client(main_module, memory_store)

    res = client.get("/api/messages/u_peer")

    assert res.status_code == 200
    assert res.json() == []
