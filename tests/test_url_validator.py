import pytest

from pagefields.config import ValidatorConfig
from pagefields.services.exceptions import SecurityError, ValidationError
from pagefields.services.url_validator import UrlValidator

from conftest import public_resolver


@pytest.fixture()
def validator():
    return UrlValidator(resolver=public_resolver)


@pytest.mark.parametrize(
    "url",
    [
        "https://example.com",
        "http://example.com/path?q=1",
        "https://sub.example.co.uk:8443/a/b",
        "http://93.184.216.34/",
    ],
)
def test_validate_accepts_public_http_urls(validator, url):
    assert validator.validate(url) == url


def test_validate_strips_whitespace_but_does_not_add_scheme(validator):
    assert validator.validate("  https://example.com  ") == "https://example.com"
    with pytest.raises(SecurityError, match="scheme"):
        validator.validate("example.com")


@pytest.mark.parametrize("url", ["", "   ", None])
def test_validate_rejects_blank_input_as_validation_error(validator, url):
    with pytest.raises(ValidationError, match="blank"):
        validator.validate(url)


@pytest.mark.parametrize(
    "url",
    [
        "ftp://example.com/file",
        "file:///etc/passwd",
        "javascript:alert(1)",
        "data:text/html,<h1>x</h1>",
    ],
)
def test_validate_rejects_non_http_schemes(validator, url):
    with pytest.raises(SecurityError, match="not allowed"):
        validator.validate(url)


@pytest.mark.parametrize(
    "url",
    [
        "http://127.0.0.1/",
        "http://127.1.2.3:8080/admin",
        "http://10.0.0.5/",
        "http://172.16.0.1/",
        "http://172.31.255.255/",
        "http://192.168.1.1/router",
        "http://169.254.169.254/latest/meta-data",
        "http://[::1]/",
        "http://[fe80::1]/",
        "http://[fd00::1]/",
        "http://[::ffff:10.0.0.1]/",
        "http://localhost:3000/",
        "http://LOCALHOST/",
        "http://metadata.google.internal/",
        "http://0.0.0.0/",
        "http://127.1/",
        "http://2130706433/",
        "http://0x7f000001/",
        "http://0177.0.0.1/",
        "http://10.1/",
        "http://[::]/",
    ],
)
def test_validate_rejects_internal_hosts(validator, url):
    with pytest.raises(SecurityError):
        validator.validate(url)


def test_validate_allows_addresses_just_outside_private_ranges(validator):
    assert validator.validate("http://172.32.0.1/")
    assert validator.validate("http://11.0.0.1/")


def test_validate_rejects_overlong_urls():
    validator = UrlValidator(ValidatorConfig(max_url_length=30))

    with pytest.raises(SecurityError, match="too long"):
        validator.validate("https://example.com/" + "a" * 20)


def test_validate_rejects_missing_host(validator):
    with pytest.raises(SecurityError, match="host"):
        validator.validate("http:///path-only")


def test_validate_honours_configured_denylist():
    validator = UrlValidator(ValidatorConfig(extra_blocked_hostnames=("evil.test",)))

    with pytest.raises(SecurityError, match="evil.test"):
        validator.validate("https://EVIL.test/page")


def test_validate_checks_resolved_addresses_when_enabled():
    validator = UrlValidator(
        ValidatorConfig(resolve_hosts=True),
        resolver=lambda host: ["10.1.2.3"],
    )

    with pytest.raises(SecurityError, match="resolves to a private address"):
        validator.validate("https://internal.example.com/")


def test_validate_ignores_resolution_failures():
    def failing_resolver(host):
        raise OSError("no such host")

    validator = UrlValidator(
        ValidatorConfig(resolve_hosts=True), resolver=failing_resolver
    )

    assert validator.validate("https://example.invalid/") == "https://example.invalid/"


def test_validate_resolves_hostnames_by_default():
    seen = []

    def loopback_resolver(host):
        seen.append(host)
        return ["127.0.0.1"]

    validator = UrlValidator(resolver=loopback_resolver)

    with pytest.raises(SecurityError, match="resolves to a private address"):
        validator.validate("http://loopback.example.com/")
    assert seen == ["loopback.example.com"]


def test_validate_skips_resolution_for_ip_literals():
    def unexpected_resolver(host):
        raise AssertionError(f"resolver called for {host}")

    validator = UrlValidator(resolver=unexpected_resolver)

    assert validator.validate("http://93.184.216.34/") == "http://93.184.216.34/"


def test_validate_accepts_hex_looking_hostnames():
    assert UrlValidator(resolver=public_resolver).validate("https://cafe.example/")


def test_validator_config_from_env_resolves_unless_disabled(monkeypatch):
    monkeypatch.delenv("RESOLVE_HOSTS", raising=False)
    assert ValidatorConfig.from_env().resolve_hosts is True

    monkeypatch.setenv("RESOLVE_HOSTS", "false")
    assert ValidatorConfig.from_env().resolve_hosts is False
