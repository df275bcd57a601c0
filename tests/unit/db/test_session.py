import pytest

from billing_engine.shared.core.config import Settings
from billing_engine.shared.core.exceptions import ConfigurationError
from billing_engine.shared.db.session import resolve_effective_url


def test_testing_defaults_to_in_memory_sqlite():
    assert resolve_effective_url(Settings(TESTING=True, DATABASE_URL="")) == (
        "sqlite+aiosqlite:///:memory:"
    )


def test_testing_never_uses_a_real_database():
    settings = Settings(TESTING=True, DATABASE_URL="postgresql://prod-db/billing")

    assert resolve_effective_url(settings) == "sqlite+aiosqlite:///:memory:"


def test_postgres_url_uses_asyncpg():
    settings = Settings(
        TESTING=False, DATABASE_URL="postgresql://db/billing", PAYSTACK_DEFAULT_CURRENCY="NGN"
    )

    assert resolve_effective_url(settings) == "postgresql+asyncpg://db/billing"


def test_missing_url_outside_tests():
    settings = Settings(TESTING=False, DATABASE_URL="", PAYSTACK_DEFAULT_CURRENCY="NGN")

    with pytest.raises(ConfigurationError):
        resolve_effective_url(settings)
