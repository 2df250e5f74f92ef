import pytest

from nexus_mcp.mcp.external.classifier import (
    AUTH_KEYWORDS,
    CONFIG_KEYWORDS,
    NETWORK_KEYWORDS,
    classify_error,
)


@pytest.mark.parametrize("keyword", AUTH_KEYWORDS)
def test_auth_keywords_are_final(keyword):
    result = classify_error(Exception(f"Request failed: {keyword.upper()}"))
    assert result.kind == "auth"
    assert result.should_reconnect is False
    assert result.message.startswith("Authentication failed: ")


@pytest.mark.parametrize("keyword", NETWORK_KEYWORDS)
def test_network_keywords_retry(keyword):
    result = classify_error(RuntimeError(f"upstream said {keyword}"))
    assert result.kind == "network"
    assert result.should_reconnect is True
    assert result.message == f"Network error: upstream said {keyword}"


@pytest.mark.parametrize("keyword", CONFIG_KEYWORDS)
def test_config_keywords_are_final(keyword):
    result = classify_error(ValueError(f"{keyword} for project"))
    assert result.kind == "config"
    assert result.should_reconnect is False
    assert result.message.startswith("Configuration error: ")


def test_organization_not_found_pattern():
    result = classify_error(Exception("Organization 'contoso' was not found"))
    assert result.kind == "config"


def test_auth_wins_over_network():
    result = classify_error(Exception("401 Unauthorized after timeout"))
    assert result.kind == "auth"


def test_network_wins_over_config():
    result = classify_error(Exception("503 service not found"))
    assert result.kind == "network"


@pytest.mark.parametrize("value,text", [
    ("plain string failure", "plain string failure"),
    (None, "None"),
    (42, "42"),
])
def test_non_exception_values_are_unknown(value, text):
    result = classify_error(value)
    assert result.kind == "unknown"
    assert result.should_reconnect is True
    assert result.message == f"Unknown error: {text}"


def test_empty_exception_uses_type_name():
    result = classify_error(ConnectionResetError())
    assert result.message == "Unknown error: ConnectionResetError"


def test_deterministic():
    error = Exception("Bad credentials")
    assert classify_error(error) == classify_error(error)
