import pytest
from argon2.exceptions import HashingError

from authkeep.config import PASSWORD_HASH_COST_DEFAULT
from authkeep.service.errors import ServerError
from authkeep.service.passwords import PasswordHasher


@pytest.fixture
def hasher():
    return PasswordHasher(2)


def test_hash_verifies_only_the_original_password(hasher):
    hashed = hasher.hash("Password1")

    assert hashed != "Password1"
    assert hashed.startswith("$argon2id$")
    assert hasher.verify("Password1", hashed) is True
    assert hasher.verify("Password2", hashed) is False


def test_hashes_are_salted(hasher):
    assert hasher.hash("Password1") != hasher.hash("Password1")


def test_malformed_hash_does_not_verify(hasher):
    assert hasher.verify("Password1", "not-a-hash") is False
    assert hasher.verify("Password1", "") is False


@pytest.mark.parametrize("cost", [0, 1, 11, 50])
def test_out_of_range_cost_uses_default(cost):
    assert PasswordHasher(cost).cost == PASSWORD_HASH_COST_DEFAULT


@pytest.mark.parametrize("cost", [2, 5, 10])
def test_in_range_cost_is_kept(cost):
    assert PasswordHasher(cost).cost == cost


def test_dummy_verify_reuses_one_hash(hasher):
    hasher.dummy_verify("Password1")
    first = hasher._dummy_hash
    hasher.dummy_verify("Something2")

    assert first is not None
    assert hasher._dummy_hash == first


class _FailingArgon2:
    def hash(self, _plaintext):
        raise HashingError("out of memory")


def test_hashing_failure_is_server_error(hasher, monkeypatch):
    monkeypatch.setattr(hasher, "_hasher", _FailingArgon2())

    with pytest.raises(ServerError) as exc:
        hasher.hash("Password1")
    assert exc.value.status_code == 500
