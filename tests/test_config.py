"""Settings validation, engine config derivation, log redaction and event payloads."""
import json

import pytest
from pydantic import ValidationError as PydanticValidationError

from app.config import EngineConfig, Settings
from app.services.event_service import MATCH_CREATED, SwapEvent
from app.utils.logging import REDACTED, redact_sensitive
from tests.fakes import T0


def _settings(**overrides):
    return Settings(
        _env_file=None,
        DATABASE_URL="postgresql+asyncpg://u:p@localhost/db",
        REDIS_URL="redis://localhost:6379/0",
        **overrides,
    )


class TestSettings:

    def test_defaults(self):
        settings = _settings()
        assert settings.OPPORTUNITY_TTL_HOURS == 168.0
        assert settings.DISMISSAL_COOLDOWN_HOURS == 24.0
        assert settings.is_production is False

    @pytest.mark.parametrize("value", [0.0, -0.1, 1.5])
    def test_weight_out_of_range(self, value):
        with pytest.raises(PydanticValidationError):
            _settings(GEO_WEIGHT=value)
        with pytest.raises(PydanticValidationError):
            _settings(LEARNED_AFFINITY_WEIGHT=value)

    def test_allowed_origins_list(self):
        settings = _settings(ALLOWED_ORIGINS="https://a.example, https://b.example")
        assert settings.allowed_origins_list == ["https://a.example", "https://b.example"]

    def test_engine_config_from_settings(self):
        config = EngineConfig.from_settings(_settings(
            GEO_WEIGHT=0.3,
            LEARNED_AFFINITY_WEIGHT=0.2,
            TOP_K_EDGES=5,
            TWO_WAY_OPPORTUNITIES_ENABLED=False,
            DISCOVERY_PARTITIONS=8,
        ))
        assert config.weights.geo == 0.3
        assert config.weights.learned == 0.2
        assert config.top_k_edges == 5
        assert config.two_way_enabled is False
        assert config.partitions == 8

    def test_engine_config_is_frozen(self):
        config = EngineConfig()
        with pytest.raises(PydanticValidationError):
            config.top_k_edges = 3


class TestRedaction:

    def test_sensitive_keys_masked(self):
        event = redact_sensitive(None, "info", {
            "event": "db_connect",
            "db_password": "hunter2",
            "headers": {"Authorization": "Bearer x", "accept": "json"},
            "user_id": "U1",
        })
        assert event["db_password"] == REDACTED
        assert event["headers"] == {"Authorization": REDACTED, "accept": "json"}
        assert event["user_id"] == "U1"


class TestSwapEvent:

    def test_json_payload(self):
        event = SwapEvent(
            type=MATCH_CREATED,
            user_ids=("U1", "U2"),
            payload={"match_id": "M1"},
            occurred_at=T0,
        )
        data = json.loads(event.to_json())
        assert data["type"] == MATCH_CREATED
        assert data["user_ids"] == ["U1", "U2"]
        assert data["payload"] == {"match_id": "M1"}
        assert data["occurred_at"] == T0.isoformat()
