from __future__ import annotations

import time
from pathlib import Path

import ws_lambda
from clinic.core.security import build_signed_token


def _isolated(monkeypatch) -> None:
    monkeypatch.delenv("MONGODB_URI", raising=False)
    monkeypatch.delenv("REALTIME_WS_ENDPOINT", raising=False)
    monkeypatch.setattr(ws_lambda, "_STACK", None)


def test_connect_handler_rejects_missing_token(monkeypatch) -> None:
    _isolated(monkeypatch)

    result = ws_lambda.connect_handler({"requestContext": {"connectionId": "c1"}}, None)

    assert result == {"statusCode": 401, "body": "Missing token"}


def test_connect_handler_rejects_forged_token(monkeypatch) -> None:
    _isolated(monkeypatch)

    result = ws_lambda.connect_handler(
        {
            "requestContext": {"connectionId": "c1"},
            "queryStringParameters": {"token": "a.b.c"},
        },
        None,
    )

    assert result["statusCode"] == 401


def test_lifecycle_handlers_degrade_without_store(monkeypatch) -> None:
    _isolated(monkeypatch)
    event = {"requestContext": {"connectionId": "c1"}, "body": '{"type":"ping"}'}

    assert ws_lambda.default_handler(event, None) == {"statusCode": 200, "body": "OK"}
    assert ws_lambda.disconnect_handler(event, None) == {"statusCode": 200, "body": "Disconnected"}
    assert ws_lambda.sweep_handler({}, None) == {"statusCode": 200, "body": "Purged 0"}


def _access_token(secret: str) -> str:
    now = int(time.time())
    return build_signed_token(
        {
            "iss": "dental-clinic",
            "sub": "u1",
            "email": "doc@clinic.local",
            "role": "DOCTOR",
            "type": "access",
            "iat": now,
            "exp": now + 900,
        },
        secret,
    )


def test_connect_handler_verifies_token_without_touching_the_filesystem(monkeypatch) -> None:
    _isolated(monkeypatch)
    monkeypatch.setenv("AUTH_SECRET_KEY", "lambda-secret")
    monkeypatch.delenv("AUTH_ISSUER", raising=False)

    def _read_only(*args, **kwargs):
        raise OSError("read-only file system")

    monkeypatch.setattr(Path, "mkdir", _read_only)

    result = ws_lambda.connect_handler(
        {
            "requestContext": {"connectionId": "c1"},
            "queryStringParameters": {"token": _access_token("lambda-secret")},
        },
        None,
    )

    assert result == {"statusCode": 200, "body": "Connected"}


def test_handlers_classify_stack_build_failures(monkeypatch) -> None:
    _isolated(monkeypatch)

    def _broken(*args, **kwargs):
        raise NotADirectoryError("runtime/auth_store")

    monkeypatch.setattr(ws_lambda, "build_realtime_stack", _broken)
    event = {
        "requestContext": {"connectionId": "c1"},
        "queryStringParameters": {"token": "a.b.c"},
        "body": '{"type":"ping"}',
    }

    assert ws_lambda.connect_handler(event, None) == {"statusCode": 500, "body": "Internal error"}
    assert ws_lambda.disconnect_handler(event, None) == {"statusCode": 200, "body": "Disconnected"}
    assert ws_lambda.default_handler(event, None) == {"statusCode": 200, "body": "OK"}
    assert ws_lambda.sweep_handler({}, None)["statusCode"] == 500
