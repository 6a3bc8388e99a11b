import pytest

from triage.core.auth import AuthenticationError, verify_shared_secret
from triage.core.security import _resolve_human_role, hash_rater


def test_hash_rater_is_stable_and_salted() -> None:
    first = hash_rater("203.0.113.7", "Mozilla/5.0", salt="salt-a")
    again = hash_rater("203.0.113.7", "Mozilla/5.0", salt="salt-a")
    other_salt = hash_rater("203.0.113.7", "Mozilla/5.0", salt="salt-b")

    assert first == again
    assert first != other_salt
    assert len(first) == 32
    assert "203.0.113.7" not in first


def test_hash_rater_distinguishes_user_agents() -> None:
    assert hash_rater("203.0.113.7", "a", salt="s") != hash_rater("203.0.113.7", "b", salt="s")


@pytest.mark.parametrize(
    ("user", "expected"),
    [
        ({"app_metadata": {"role": "curator"}}, "curator"),
        ({"app_metadata": {"roles": ["curator", "admin"]}}, "admin"),
        ({"app_metadata": {"role": "superuser"}}, "user"),
        ({"user_metadata": {"role": "admin"}}, "user"),
        ({"app_metadata": "admin"}, "user"),
    ],
)
def test_resolve_human_role_trusts_app_metadata_only(user: dict, expected: str) -> None:
    assert _resolve_human_role(user) == expected


def test_verify_shared_secret() -> None:
    verify_shared_secret("token", "token")
    with pytest.raises(AuthenticationError):
        verify_shared_secret("token", None)
    with pytest.raises(AuthenticationError):
        verify_shared_secret(None, "token")
    with pytest.raises(AuthenticationError):
        verify_shared_secret("wrong", "token")
