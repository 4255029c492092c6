import pytest

from apps.adsheet.core.auth import AuthContext, AuthError, Role


def test_director_owns_their_data():
    auth = AuthContext.from_values("7")
    assert auth.role is Role.DIRECTOR
    assert auth.owner_id == 7


def test_staff_work_on_their_directors_data():
    auth = AuthContext.from_mapping({"x-user-id": "12", "X-USER-ROLE": "Manager", "x-director-id": "7"})
    assert auth.role is Role.MANAGER
    assert auth.owner_id == 7
    assert auth.headers() == {"X-User-Id": "12", "X-User-Role": "manager", "X-Director-Id": "7"}


@pytest.mark.parametrize(
    "values",
    [
        {},
        {"X-User-Id": "abc"},
        {"X-User-Id": "0"},
        {"X-User-Id": "3", "X-User-Role": "intern"},
        {"X-User-Id": "3", "X-User-Role": "employee"},
    ],
)
def test_invalid_identities_are_rejected(values):
    with pytest.raises(AuthError):
        AuthContext.from_mapping(values)
