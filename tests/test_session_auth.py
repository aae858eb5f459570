import pytest

from auth.session_auth import SessionError, create_session_token, decode_session_token


def test_round_trip(settings):
    token = create_session_token("user-1", settings)
    assert decode_session_token(token, settings) == "user-1"


def test_wrong_secret(settings):
    token = create_session_token("user-1", settings)
    other = settings.model_copy(update={"session_secret": "other"})
    with pytest.raises(SessionError, match="Invalid"):
        decode_session_token(token, other)


def test_expired(settings):
    token = create_session_token("user-1", settings, expires_in_minutes=-5)
    with pytest.raises(SessionError, match="expired"):
        decode_session_token(token, settings)
