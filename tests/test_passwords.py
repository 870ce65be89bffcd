"""Unit tests for argon2id password hashing."""

import pytest

from warden.service.passwords import PasswordHasher


@pytest.fixture
def hasher():
    return PasswordHasher(time_cost=1, memory_cost=8192, parallelism=1)


def test_hash_is_argon2id_and_salted(hasher):
    first = hasher.hash("CorrectHorse42")
    second = hasher.hash("CorrectHorse42")

    assert first.startswith("$argon2id$")
    assert first != second
    assert "CorrectHorse42" not in first


def test_verify_matches_only_the_original_password(hasher):
    digest = hasher.hash("CorrectHorse42")

    assert hasher.verify("CorrectHorse42", digest) is True
    assert hasher.verify("correcthorse42", digest) is False


def test_verify_never_raises_on_garbage_digest(hasher):
    assert hasher.verify("CorrectHorse42", "not-a-hash") is False
    assert hasher.verify("CorrectHorse42", "") is False


def test_burn_returns_nothing(hasher):
    assert hasher.burn("whatever-password") is None
