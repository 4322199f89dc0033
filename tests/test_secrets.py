"""Tests for kestrel.secrets."""

from unittest.mock import patch

import pytest
from keyring.errors import KeyringError

from kestrel import secrets


def test_get_secret_falls_back_to_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """keyring has nothing: the environment value is returned."""
    monkeypatch.setenv("KESTREL_TEST_ENV_ONLY", "from-env")
    with patch("kestrel.secrets.keyring") as mock_kr:
        mock_kr.get_password.return_value = None
        assert secrets.get_secret("KESTREL_TEST_ENV_ONLY") == "from-env"
        mock_kr.get_password.assert_called_once_with("kestrel", "KESTREL_TEST_ENV_ONLY")


def test_get_secret_prefers_keyring(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("KESTREL_TEST_BOTH", "from-env")
    with patch("kestrel.secrets.keyring") as mock_kr:
        mock_kr.get_password.return_value = "from-keyring"
        assert secrets.get_secret("KESTREL_TEST_BOTH") == "from-keyring"


def test_keyring_error_falls_back_to_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("KESTREL_TEST_ERR", "from-env")
    with patch("kestrel.secrets.keyring") as mock_kr:
        mock_kr.get_password.side_effect = KeyringError("locked")
        assert secrets.get_secret("KESTREL_TEST_ERR") == "from-env"


def test_empty_values_count_as_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("KESTREL_TEST_EMPTY", "")
    with patch("kestrel.secrets.keyring") as mock_kr:
        mock_kr.get_password.return_value = ""
        assert secrets.get_secret("KESTREL_TEST_EMPTY") is None


@pytest.mark.asyncio
async def test_get_secret_async_prefers_keyring(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("KESTREL_TEST_ASYNC", "from-env")
    with patch("kestrel.secrets.keyring") as mock_kr:
        mock_kr.get_password.return_value = "from-keyring"
        assert await secrets.get_secret_async("KESTREL_TEST_ASYNC") == "from-keyring"


@pytest.mark.asyncio
async def test_lookup_secrets_splits_found_and_missing() -> None:
    values = {"A_KEY": "a", "B_KEY": ""}

    async def getter(name: str) -> str | None:
        return values.get(name)

    found, missing = await secrets.lookup_secrets(["A_KEY", "B_KEY", "C_KEY", "A_KEY"], getter)
    assert found == {"A_KEY": "a"}
    assert missing == ["B_KEY", "C_KEY"]


def test_mask_secret() -> None:
    assert secrets.mask_secret("sk-proj-abcdef1234") == "sk-p...1234"
    assert secrets.mask_secret("short") == "*****"


def test_is_keyring_available_detects_fail_backend() -> None:
    with patch("kestrel.secrets._is_fail_backend", return_value=True):
        assert secrets.is_keyring_available() is False
    with patch("kestrel.secrets._is_fail_backend", return_value=False):
        assert secrets.is_keyring_available() is True
