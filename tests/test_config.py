"""Tests for settings loading and validation."""

from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError

from trove_monitor.config import Settings, clear_settings_cache, get_settings

REQUIRED_ENV = {
    "DATABASE_URL": "postgresql+asyncpg://monitor:hunter2@db:5432/troves",
    "MEZO_RPC_URL": "https://rpc.example.org",
    "ETHEREUM_RPC_URL": "https://eth.example.org",
}


@pytest.fixture
def env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> pytest.MonkeyPatch:
    """Required variables set, and no stray .env in the working directory."""
    monkeypatch.chdir(tmp_path)
    for key, value in REQUIRED_ENV.items():
        monkeypatch.setenv(key, value)
    clear_settings_cache()
    yield monkeypatch
    clear_settings_cache()


class TestDefaults:
    def test_indexer_defaults(self, env: pytest.MonkeyPatch) -> None:
        settings = Settings()

        assert settings.indexer.environment == "prod"
        assert settings.indexer.liquidation_chunk_size == 1000
        assert settings.indexer.redemption_chunk_size == 1000
        assert settings.indexer.lookback_blocks == 500_000
        assert settings.indexer.multicall_batch_size == 250
        assert settings.indexer.price_sample_interval_blocks == 120
        assert settings.indexer.average_sample_interval_blocks == 2880
        assert settings.indexer.average_window_hours == 4

    def test_other_defaults(self, env: pytest.MonkeyPatch) -> None:
        settings = Settings()

        assert settings.mezo.chain_id == 31612
        assert settings.redis.url is None
        assert settings.contracts.price_feed is None
        assert settings.redemption.private_key is None
        assert settings.redemption.max_iterations == 50
        assert settings.redemption.probe_amount is None
        assert settings.quote.sell_amount == Decimal("100000")
        assert settings.log_level == "INFO"


class TestOverrides:
    def test_chunk_sizes_and_environment(self, env: pytest.MonkeyPatch) -> None:
        env.setenv("ENVIRONMENT", "dev")
        env.setenv("LIQUIDATION_CHUNK_SIZE", "500")
        env.setenv("REDEMPTION_CHUNK_SIZE", "2500")

        settings = Settings()

        assert settings.indexer.environment == "dev"
        assert settings.indexer.liquidation_chunk_size == 500
        assert settings.indexer.redemption_chunk_size == 2500

    def test_non_positive_chunk_size_rejected(self, env: pytest.MonkeyPatch) -> None:
        env.setenv("LIQUIDATION_CHUNK_SIZE", "0")

        with pytest.raises(ValidationError):
            Settings()

    @pytest.mark.parametrize(("raw", "expected"), [("999", 250), ("0", 1), ("40", 40)])
    def test_max_iterations_clamped(self, env: pytest.MonkeyPatch, raw: str, expected: int) -> None:
        env.setenv("REDEMPTION_MAX_ITERATIONS", raw)

        assert Settings().redemption.max_iterations == expected

    def test_probe_amount_must_be_positive(self, env: pytest.MonkeyPatch) -> None:
        env.setenv("REDEMPTION_PROBE_AMOUNT", "0")

        with pytest.raises(ValidationError):
            Settings()

    def test_rejects_non_postgres_database(self, env: pytest.MonkeyPatch) -> None:
        env.setenv("DATABASE_URL", "mysql://localhost/troves")

        with pytest.raises(ValidationError):
            Settings()

    def test_rejects_websocket_rpc(self, env: pytest.MonkeyPatch) -> None:
        env.setenv("MEZO_RPC_URL", "wss://rpc.example.org")

        with pytest.raises(ValidationError):
            Settings()

    def test_missing_rpc_url(self, env: pytest.MonkeyPatch) -> None:
        env.delenv("MEZO_RPC_URL")

        with pytest.raises(ValidationError):
            Settings()


class TestHelpers:
    def test_redacted_summary_masks_secrets(self, env: pytest.MonkeyPatch) -> None:
        env.setenv("REDEMPTION_PRIVATE_KEY", "0x" + "ab" * 32)

        summary = Settings().redacted_summary()

        assert summary["database_url"] == "postgresql+asyncpg://monitor:***@db:5432/troves"
        assert "hunter2" not in str(summary)
        assert "ab" * 32 not in str(summary)
        assert summary["redemption"]["private_key"] == "(set)"

    def test_logging_level(self, env: pytest.MonkeyPatch) -> None:
        env.setenv("LOG_LEVEL", "DEBUG")

        assert Settings().get_logging_level() == 10

    def test_redeem_execute_requires_key(self, env: pytest.MonkeyPatch) -> None:
        settings = Settings()

        settings.validate_requirements(command="index")
        settings.validate_requirements(command="redeem")
        with pytest.raises(ValueError, match="REDEMPTION_PRIVATE_KEY"):
            settings.validate_requirements(command="redeem", execute=True)

    def test_index_requires_database_and_ethereum(self, env: pytest.MonkeyPatch) -> None:
        env.delenv("DATABASE_URL")
        env.delenv("ETHEREUM_RPC_URL")
        settings = Settings()

        assert settings.database.url is None
        assert settings.ethereum.rpc_url is None
        assert settings.redacted_summary()["database_url"] == "(not set)"
        settings.validate_requirements(command="redeem")
        with pytest.raises(ValueError, match="DATABASE_URL"):
            settings.validate_requirements(command="index")

        env.setenv("DATABASE_URL", REQUIRED_ENV["DATABASE_URL"])
        with pytest.raises(ValueError, match="ETHEREUM_RPC_URL"):
            Settings().validate_requirements(command="index")

    def test_get_settings_is_cached(self, env: pytest.MonkeyPatch) -> None:
        first = get_settings()
        assert get_settings() is first

        clear_settings_cache()
        assert get_settings() is not first
