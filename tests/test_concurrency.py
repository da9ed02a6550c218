"""
tests/test_concurrency.py -- Races that the database constraints must decide.

Uses a file-backed SQLite database (WAL, one connection per thread) instead
of the shared-memory one, so concurrent transactions really contend for the
write lock the way they do in production. Each test releases its workers
through a threading.Barrier so the calls overlap.

Coverage:
  - N concurrent rotations of one refresh token: exactly one wins
  - N concurrent refreshes through AuthSessionManager: one new pair, the rest 401
  - N concurrent signups with the same email: one account, the rest 409
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Generator
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from auth.oauth import OAuthGateway
from auth.sessions import AuthSessionManager
from auth.store import CredentialStore
from auth.tokens import TokenCodec
from core.config import Settings
from core.errors import ConflictError, UnauthorizedError

WORKERS = 4


@pytest.fixture
def file_store(tmp_path) -> Generator[CredentialStore, None, None]:
    s = CredentialStore(f"sqlite:///{tmp_path / 'race.db'}")
    yield s
    s.close()


@pytest.fixture
def file_sessions(file_store: CredentialStore, settings: Settings) -> AuthSessionManager:
    return AuthSessionManager(file_store, TokenCodec(settings), OAuthGateway(settings), bcrypt_rounds=4)


def _race(calls: list[Callable[[], object]]) -> tuple[list[object], list[BaseException]]:
    """Run every call on its own thread, released together. Returns (results, errors)."""
    barrier = threading.Barrier(len(calls))

    def run(call: Callable[[], object]) -> object:
        barrier.wait()
        return call()

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        futures = [pool.submit(run, call) for call in calls]
    results, errors = [], []
    for future in futures:
        exc = future.exception()
        if exc is None:
            results.append(future.result())
        else:
            errors.append(exc)
    return results, errors


class TestRotationRace:
    def test_exactly_one_store_rotation_wins(self, file_store: CredentialStore) -> None:
        expires = datetime.now(timezone.utc) + timedelta(hours=1)
        file_store.create_refresh_token(1, "old", expires)

        calls = [
            (lambda i=i: file_store.rotate_refresh_token("old", 1, f"new-{i}", expires)) for i in range(WORKERS)
        ]
        results, errors = _race(calls)

        assert errors == []
        assert sorted(results) == [False] * (WORKERS - 1) + [True]
        survivors = [i for i in range(WORKERS) if file_store.find_refresh_token(f"new-{i}") is not None]
        assert len(survivors) == 1
        assert file_store.find_refresh_token("old") is None

    def test_concurrent_refresh_issues_one_pair(self, file_sessions: AuthSessionManager) -> None:
        """Losers see a clean 401-class error, never a database error."""
        refresh_token = file_sessions.signup("a@x.com", "alice", "longenough1").tokens.refresh_token

        results, errors = _race([lambda: file_sessions.refresh(refresh_token)] * WORKERS)

        assert len(results) == 1
        assert len(errors) == WORKERS - 1
        assert all(isinstance(exc, UnauthorizedError) for exc in errors)
        assert file_sessions.store.find_refresh_token(refresh_token) is None
        assert file_sessions.store.find_refresh_token(results[0].refresh_token) is not None


class TestSignupRace:
    def test_same_email_creates_one_account(self, file_sessions: AuthSessionManager) -> None:
        calls = [
            (lambda i=i: file_sessions.signup("race@x.com", f"racer{i}", "longenough1")) for i in range(WORKERS)
        ]
        results, errors = _race(calls)

        assert len(results) == 1
        assert len(errors) == WORKERS - 1
        assert all(isinstance(exc, ConflictError) and exc.code == "email_taken" for exc in errors)
        assert file_sessions.store.find_user_by_email("race@x.com").id == results[0].user.id
